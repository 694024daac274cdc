"""Provider clients and token accounting."""
