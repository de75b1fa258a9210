"""Infrastructure clients shared across photoguard packages."""
