"""Operator engine for stack-based resource deployment.

Evaluates a stack's resource graph against a provider: values and deferred
outputs, dependency ordering, state diffing and concurrent execution.

Package name uses 'stack_opr' (short for operator) to avoid collision
with Python's stdlib 'operator' module.
"""
