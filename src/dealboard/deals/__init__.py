"""Deal board module -- stage classification, optimistic reconciliation and persistence.

Provides the canonical stage table (stages), drop-target resolution and
board grouping (kanban), the reducer-backed DealStore (store), the
StageReconciliationController that applies optimistic moves and folds in
the realtime change feed (controller, feed), the HTTP client for the
deal API (client), and the SQLAlchemy model and DealRepository used by
the server side.
"""
