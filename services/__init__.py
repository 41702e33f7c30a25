"""Services of the signal consensus pipeline."""
