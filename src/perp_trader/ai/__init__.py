"""Decision oracle: LLM client, prompts, response schema."""
