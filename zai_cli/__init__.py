"""zai-cli: a coding assistant for Z.ai GLM models with local tools and MCP servers."""
