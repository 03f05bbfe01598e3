"""Unit tests for persistor.config."""
