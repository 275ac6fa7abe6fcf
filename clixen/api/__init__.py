from clixen.api.auth import get_current_account, get_runtime
from clixen.api.telegram import router as telegram_router
from clixen.api.access import router as access_router

__all__ = [
    "telegram_router",
    "access_router",
    "get_current_account",
    "get_runtime",
]
