"""Run the kube-sync command line tool."""

from kube_sync.tool.kube_sync import main

main()
