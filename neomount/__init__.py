"""Tiered storage that merges fast local disk with a remote object store."""
