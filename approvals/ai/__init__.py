"""
Bank Approval Workflow Service
AI module.

Submodules:
    - gateway: LLM provider abstraction used by the LLM-assisted validator
"""
