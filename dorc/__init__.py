"""Deployment Orchestration Core (DORC).

Single-node rollout orchestrator for services made of several containers:
 - startup ordering from "depends_on: STARTED|HEALTHY" edges
 - health-gated launches (command or HTTP probes)
 - commit after a stabilization hold, automatic rollback otherwise
 - durable service state with compare-and-swap saves

The container platform, config sources and telemetry pipeline are
collaborators; the Docker and SQLite implementations here are the defaults.
"""
