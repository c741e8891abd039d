"""couplehabits command line interface."""
