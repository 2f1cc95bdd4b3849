"""Request coordination."""
