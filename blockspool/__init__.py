"""Blockspool: run-state persistence and project guidelines for repo automation.

:mod:`blockspool.run_state` keeps cycle counters and the deferred-proposal
backlog in ``.blockspool/run-state.json``. :mod:`blockspool.guidelines`
loads CLAUDE.md / AGENTS.md for prompt embedding.
"""
