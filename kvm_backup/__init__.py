"""KVM live backup using external snapshots and active block-commit."""

__version__ = "1.0.0"
