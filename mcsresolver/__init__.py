"""In-memory DNS record resolution for multi-cluster services, with its resource store, controller and global ingress IP cache."""

__version__ = "0.1.0"