"""
Workflow execution engine internals.

Modules:
    graph        WorkflowGraph: one read interface over live tables or a snapshot
    snapshot     started / completed snapshot capture and synthesis
    branches     BranchArena: fork ancestry with an explicit generation counter
    conditions   form predicate evaluation for conditional edges
    routing      next-node resolution and rejection misconfiguration checks
    policies     sync-leader tie-break and rejection strategy objects
    sync_lock    row lock serializing the count-and-release of a join
    coordinator  step materialization, fork and join
    rejection    rework routing on forked branches (preserve vs. rollback)
    completion   terminal-state gate
    subject      project/task side effects (assignments, updates, issues)
    validation   template validation report

Public operations live in app/services/workflow_execution_service.py and
app/services/workflow_service.py; nothing here commits.
"""
