"""
Rule Service package.

Stores versioned business rules, matches them against a request context and
renders auditable decisions per rule family:

- app.service: RuleService facade (resolve, score, decide, upsert, authoring).
- app.rules: Rule model, matching, composition, family handlers and engine.
- app.cache: Per-(organization, family) TTL cache of candidate rules.
- app.persistence: Document stores (in-memory, PostgreSQL) and the adapter.
- app.audit: Decision audit sinks and the fire-and-forget dispatcher.

Guidelines:
- Store trouble degrades to "no matching rule"; it never breaks the caller.
- Matching, composition and decision handlers stay pure; only store fetches
  and audit writes touch the network.
"""
