"""Course/partner matching and project proposal generation."""
