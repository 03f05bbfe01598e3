"""Object contexts, the context pool and lane routing."""

from persistor.context.managed_context import ObjectContext
from persistor.context.pool import ContextPool
from persistor.context.router import LaneRouter

__all__ = ["ContextPool", "LaneRouter", "ObjectContext"]
