"""
Restaurant order core.

Cart pricing, the stock ledger, the order and item state machine, the kitchen
queue, payments, and the router that keeps every terminal's views consistent
with the shared store.

STRUCTURE:
- pos_core.models: pydantic domain models
- pos_core.ports: Protocols for the store, change stream, gateway, devices
- pos_core.services: domain services, payments, activity log, peripherals
- pos_core.realtime: change events, view caches, notification router
- pos_core.app: PosCore composition root
"""
