"""Aggregators for the dashboard endpoints.

Each module fetches upstream data through the injected clients and shapes
it into the JSON response contract for one endpoint.
"""
