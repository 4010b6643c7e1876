"""Context engine tests."""
