"""Unit tests for persistor.observability."""
