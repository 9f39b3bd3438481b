"""Application layer for ragindex.

Ports define the contract every vector backend honours; adapters hold the
concrete graph and disk implementations.
"""
