"""keyswap command line."""
