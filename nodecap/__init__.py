"""Node capacity resolver (nodecap).

Startup helpers for a cluster worker node:
 - resolve the cpus/mem/disk/ports capacity advertised to the master,
   merging operator overrides with values probed from the host
 - select the isolation backend that enforces per-task limits

Both run once at startup; nothing here keeps state between calls.
"""
