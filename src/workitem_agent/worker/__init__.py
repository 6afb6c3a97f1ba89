"""Workitem lifecycle: snapshot, execute, diff, reconcile, clean up."""
