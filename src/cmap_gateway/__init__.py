"""CMAP Gateway: read-only query layer for remote tabular geoscience data.

The package turns spatiotemporal selections into dialect query text, runs a
count-only preflight before large transfers and normalizes the returned
tables. The CLI and MCP server in `interfaces/` are thin wrappers over
`cmap_gateway.core.query` and `cmap_gateway.remote`.
"""

__all__ = [
    "__version__",
]

__version__ = "0.3.0"
