"""Unit tests for persistor.domain."""
