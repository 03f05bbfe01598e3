"""Unit tests for persistor.schema."""
