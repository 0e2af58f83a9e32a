"""Request middleware: rate limiting and request-shape guards."""
