"""Workflow graphs — which jobs run in response to which trigger tokens.

A graph is a flat list of nodes (jobs and trigger tokens) and directed edges
``src → dest``. An edge from ``~commit`` to ``main`` means a commit on the
pipeline's own branch starts ``main``; an edge from ``main`` to ``publish``
means ``publish`` runs after ``main`` succeeds.

Key exports:
    WorkflowGraph, WorkflowNode, WorkflowEdge: graph models
    PipelineDefinition, JobDefinition: the definition file read on sync
    get_next_jobs, get_reachable_jobs, build_graph
"""

from __future__ import annotations

import re
from collections import deque
from typing import Any

from pydantic import BaseModel, Field, field_validator

# Job names end up in trigger locators (~sd@<id>:<job>).
JOB_NAME = re.compile(r"^[\w-]+$")


class WorkflowNode(BaseModel):
    name: str


class WorkflowEdge(BaseModel):
    src: str
    dest: str


class WorkflowGraph(BaseModel):
    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)


class JobDefinition(BaseModel):
    """One job in a pipeline definition file."""

    requires: list[str] = Field(default_factory=list)
    image: str | None = None
    steps: list[Any] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)
    annotations: dict[str, Any] = Field(default_factory=dict)

    @field_validator("requires", mode="before")
    @classmethod
    def _coerce_requires(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v


class PipelineDefinition(BaseModel):
    """Parsed pipeline definition file (``conductor.yaml`` in the repository)."""

    annotations: dict[str, Any] = Field(default_factory=dict)
    jobs: dict[str, JobDefinition] = Field(default_factory=dict)

    @field_validator("jobs", mode="before")
    @classmethod
    def _check_jobs(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        for name in v:
            if not JOB_NAME.match(str(name)):
                raise ValueError(f"Invalid job name: {name!r}")
        # A bare ``main:`` entry is a job with no settings.
        return {name: {} if job is None else job for name, job in v.items()}


def get_next_jobs(graph: WorkflowGraph, trigger: str) -> list[str]:
    """Jobs started directly by ``trigger`` (a trigger token or a job name)."""
    seen: set[str] = set()
    result: list[str] = []
    for edge in graph.edges:
        if edge.src == trigger and edge.dest not in seen:
            seen.add(edge.dest)
            result.append(edge.dest)
    return result


def get_reachable_jobs(graph: WorkflowGraph, trigger: str) -> list[str]:
    """Every job transitively reachable from ``trigger``, in BFS order."""
    visited: set[str] = set()
    order: list[str] = []
    queue = deque(get_next_jobs(graph, trigger))
    while queue:
        job = queue.popleft()
        if job in visited:
            continue
        visited.add(job)
        order.append(job)
        queue.extend(get_next_jobs(graph, job))
    return order


def build_graph(definition: PipelineDefinition) -> WorkflowGraph:
    """Build the workflow graph from each job's ``requires`` list."""
    names: list[str] = []
    edges: list[WorkflowEdge] = []
    for job_name, job in definition.jobs.items():
        if job_name not in names:
            names.append(job_name)
        for src in job.requires:
            if src not in names:
                names.append(src)
            edges.append(WorkflowEdge(src=src, dest=job_name))
    return WorkflowGraph(nodes=[WorkflowNode(name=n) for n in names], edges=edges)
