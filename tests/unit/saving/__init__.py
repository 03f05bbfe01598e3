"""Unit tests for persistor.saving."""
