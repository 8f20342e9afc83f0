"""
Shared module for common utilities across the order core.

STRUCTURE:
- shared.config: Configuration
  - settings.py: Environment config (pydantic-settings)
  - logging.py: Structured logging
  - constants.py: Roles, statuses, transition tables, payment method rules

- shared.infrastructure: Cross-cutting runtime helpers
  - correlation.py: Operation ids for log correlation
  - locks.py: Per-entity asyncio locks

- shared.utils: Utilities
  - exceptions.py: Categorized exceptions with auto-logging
  - money.py: Decimal helpers

IMPORT EXAMPLES:
    from shared.config.settings import settings
    from shared.config.constants import OrderStatus, ORDER_TRANSITIONS
    from shared.utils.exceptions import InsufficientStockError
"""
