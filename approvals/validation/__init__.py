"""Pre-decision validators: rules-based, LLM-assisted, graph-assisted and custom."""
