"""HTTP operator surface for the billing engine."""
