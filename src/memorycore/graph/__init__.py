"""Knowledge-graph side of memorycore.

Saved replies are turned into entities and relations by a model tool call
(`extract`), written to a graph store exposed through named capabilities
(`sqlite_graph` locally, or an MCP server), and read back into a
renderable node/edge view (`service`, `view`).
"""
