"""Grow PersistentVolumeClaims automatically as they fill up."""
