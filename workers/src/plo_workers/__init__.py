"""PLO workers: event ingestion, lifecycle tracking and anomaly alerting."""
