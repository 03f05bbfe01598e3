"""Unit tests for persistor.context."""
