"""
Bank Approval Workflow Service
Rule engine — pure, side-effect-free evaluation.

Submodules:
    - conditions: single value vs. condition-string evaluator
    - decision_table: hit-policy resolution over ordered rules
    - plan: decision outputs → ComputedApprovalPlan
"""
