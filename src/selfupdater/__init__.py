"""
Self-updater - keeps a long-running application in sync with its git branch.

This package polls the watched branch, restarts the application when new
code lands, verifies it through a heartbeat file after a grace window and
rolls back to the last known-good revision when the heartbeat goes stale.
"""

__version__ = "0.1.0"
