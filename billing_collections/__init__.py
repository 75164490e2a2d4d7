"""Agency billing collections and dunning engine."""
