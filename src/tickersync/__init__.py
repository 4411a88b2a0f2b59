"""Near-real-time ticker synchronization over the KIS Open API with polling and secondary-provider failover."""
