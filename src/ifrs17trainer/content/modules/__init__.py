"""Question bank modules as JSON resources."""
