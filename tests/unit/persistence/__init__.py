"""Unit tests for persistor.persistence."""
