"""Module __init__: bringing the closed network up and down."""
#
# PURPOSE:
# Starts every service of the testbed in dependency order and stops them again.
#
# KEY MODULES:
# - **supervisor.py**: dependency graph, lifecycle states, bring-up and teardown
# - **launchers.py**: docker / process / in-process / external start hooks
# - **probes.py**: health predicates (HTTP, TCP, events)
# - **topology.py**: the default service graph of the testbed
#
