"""
Rules engine package.

Modules of interest:
- models: Rule document model, evaluation context and decision types.
- temporal, scope, conditions: strict gates plus their diagnostic scorers.
- resolver: candidate loading, filtering and ordering.
- composer, families: per-family composition and decision handlers.
- formulas: closed set of formula variants used by payloads.
- engine, authoring: decisions, validation, simulation and diffs.
"""
