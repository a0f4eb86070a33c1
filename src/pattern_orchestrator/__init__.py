"""Pattern orchestrator: install and tear down a validated pattern on a cluster.

The package drives a pattern's infrastructure, operators, controller and
applications through a staged pipeline, monitoring every component
concurrently against the live cluster, and removes them again in strict
reverse order without ever touching namespaces the platform depends on.
"""

__version__ = "1.0.0"
