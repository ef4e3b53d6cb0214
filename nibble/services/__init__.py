"""External collaborators: LLMs, chain, blob storage and the metadata cipher."""
