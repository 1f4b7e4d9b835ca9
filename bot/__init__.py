"""
Top-level package for the Discord LLM bot.

This package hosts:
- config loading and validation, including retry/breaker policies
- the resilience gateway every outbound API call goes through
  (retry with backoff, shared circuit breaker, owner approval gate)
- Discord client, owner notifications and /circuitbreaker admin commands
- LLM provider call sites (OpenAI-compatible, Ollama) and attachment downloads
"""
