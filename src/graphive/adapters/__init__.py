"""Graph database adapters for graphive.

One contract, two backends: Neo4j (transactional, bolt driver) and
FalkorDB (browser HTTP API, event-stream results, no transactions).
"""

from graphive.adapters.base import GraphAdapter, ProjectionBuilder

__all__ = ["GraphAdapter", "ProjectionBuilder"]
