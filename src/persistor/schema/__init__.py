"""Schema provider: loads the entity model a store is opened with."""

from persistor.schema.provider import load_model, model_from_mapping

__all__ = ["load_model", "model_from_mapping"]
