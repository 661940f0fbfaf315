"""Tests for the kube-sync command line tool."""
