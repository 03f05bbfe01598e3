"""End-to-end tests for the persistor facade."""
