"""Air quality ingestion and health-risk scoring engine."""
