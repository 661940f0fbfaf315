"""Command line tool for kube-sync."""
