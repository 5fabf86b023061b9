"""graphive - keep an optimistically edited canvas graph in sync with Neo4j or FalkorDB."""

__version__ = "0.1.0"
