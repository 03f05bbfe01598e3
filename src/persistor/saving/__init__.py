"""Save pipeline: coordinator and merge listener."""

from persistor.saving.coordinator import SaveCoordinator
from persistor.saving.merge_listener import ChangeMergeListener

__all__ = ["ChangeMergeListener", "SaveCoordinator"]
