"""Background workers for the content scanning queue."""
