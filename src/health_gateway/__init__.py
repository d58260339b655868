"""
Health Gateway - HTTP surface of the Smart Health Hub cache layer

Provides the FastAPI application bootstrap and the edge cache middleware
that emits Cache-Control headers and invalidates cached entities after
successful writes.
"""
