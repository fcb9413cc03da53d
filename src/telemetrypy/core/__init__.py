"""Core domain: models, ports, query pipeline and anomaly detection."""
