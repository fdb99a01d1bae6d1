"""Data-plane clients: Kusto queries and Event Hub publishing."""
