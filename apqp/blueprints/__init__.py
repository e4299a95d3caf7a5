"""HTTP blueprints for the APQP document platform (all under /api/v1)."""
