"""Core infrastructure: state, lifecycle, middleware, exception handling."""
