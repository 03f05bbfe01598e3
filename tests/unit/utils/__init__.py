"""Unit tests for persistor.utils."""
