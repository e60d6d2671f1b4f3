"""HTTP surface for calpush."""
