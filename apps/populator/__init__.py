"""Volume populator: provision PVCs from ReplicationDestination snapshots."""
