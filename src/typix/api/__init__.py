"""FastAPI application for Typix.

- :mod:`typix.api.models`: pydantic request bodies
- :mod:`typix.api.main`: application factory, routes and the ``typix`` CLI
"""
