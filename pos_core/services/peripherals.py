"""
Peripheral devices.

Printer, cash drawer and scanner are injected collaborators owned by a
PeripheralHub with an explicit configure/dispose lifecycle. Device failures are
logged as warnings and never propagate: a committed payment stays committed
even if the receipt does not print.
"""

import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pos_core.models import CartItem, Order, Payment
from pos_core.ports import BarcodeScanner, CashDrawer, Peripheral, ReceiptPrinter
from pos_core.services.domain.cart_service import CartService
from pos_core.services.domain.stock_service import StockService
from shared.config.constants import PaymentMethod
from shared.config.logging import get_logger

logger = get_logger(__name__)

_EAN13 = re.compile(r"^\d{13}$")
_UPC_A = re.compile(r"^\d{12}$")
_CODE128 = re.compile(r"^[A-Z0-9]{8,20}$")
_SKU = re.compile(r"^[A-Z]{2,4}\d{4,8}$")


@dataclass(frozen=True, slots=True)
class ScannedCode:
    value: str
    kind: str  # barcode | sku
    format: str


def classify_code(raw: str) -> ScannedCode | None:
    """Recognize a scanned code. Unrecognized input returns None."""
    code = raw.strip().upper()
    if _EAN13.match(code):
        return ScannedCode(code, "barcode", "EAN-13")
    if _UPC_A.match(code):
        return ScannedCode(code, "barcode", "UPC-A")
    if _CODE128.match(code):
        return ScannedCode(code, "barcode", "Code 128")
    if _SKU.match(code):
        return ScannedCode(code, "sku", "SKU")
    return None


class PeripheralHub:
    """Owns the devices of one terminal."""

    def __init__(
        self,
        printer: ReceiptPrinter | None = None,
        drawer: CashDrawer | None = None,
        scanner: BarcodeScanner | None = None,
    ):
        self._devices: dict[str, Peripheral] = {
            name: device
            for name, device in (("printer", printer), ("drawer", drawer), ("scanner", scanner))
            if device is not None
        }
        self._configured: set[str] = set()

    @property
    def configured(self) -> set[str]:
        return set(self._configured)

    async def configure(self, options: dict[str, dict[str, Any]] | None = None) -> None:
        """Configure every device. A device that fails stays unconfigured and unused."""
        options = options or {}
        for name, device in self._devices.items():
            if await self._run(name, "configure", lambda d=device, n=name: d.configure(options.get(n, {}))):
                self._configured.add(name)

    async def dispose(self) -> None:
        for name in list(self._configured):
            if name == "scanner":
                await self._run(name, "stop", self._devices[name].stop)
            await self._run(name, "dispose", self._devices[name].dispose)
        self._configured.clear()

    async def on_payment_completed(self, order: Order, payment: Payment) -> None:
        """Print the receipt, and open the drawer for cash."""
        if "printer" in self._configured:
            printer = self._devices["printer"]
            await self._run("printer", "print_receipt", lambda: printer.print_receipt(order, payment))
        if payment.method == PaymentMethod.CASH and "drawer" in self._configured:
            await self._run("drawer", "open_drawer", self._devices["drawer"].open_drawer)

    async def start_scanning(self, on_scan: Callable[[str], Awaitable[Any]]) -> bool:
        if "scanner" not in self._configured:
            return False
        scanner = self._devices["scanner"]
        return await self._run("scanner", "start", lambda: scanner.start(on_scan))

    async def _run(self, device: str, action: str, call: Callable[[], Awaitable[Any]]) -> bool:
        try:
            await call()
        except Exception:
            logger.warning("Peripheral call failed", device=device, action=action, exc_info=True)
            return False
        return True


class ScanToCart:
    """Scanned code → product lookup → cart add."""

    def __init__(self, stock: StockService, cart: CartService):
        self._stock = stock
        self._cart = cart

    async def handle_scan(self, raw: str) -> CartItem | None:
        """
        Add one unit of the scanned product to the cart.

        Returns None for unrecognized codes and unknown products. Stock and
        quantity errors from the cart propagate.
        """
        code = classify_code(raw)
        if code is None:
            logger.warning("Unrecognized scan", length=len(raw))
            return None

        product = await self._stock.find_product(code.kind, code.value)
        if product is None:
            logger.warning("No product for scanned code", code=code.value, format=code.format)
            return None

        return self._cart.add_item(product, 1)
