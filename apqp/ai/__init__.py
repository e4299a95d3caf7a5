"""
APQP Document Platform
AI module — generative content for quality documents.

Submodules:
    - gateway: LLM Gateway (provider routing, retry-then-fallback)
    - prompt_registry: built-in + YAML prompt templates
"""
