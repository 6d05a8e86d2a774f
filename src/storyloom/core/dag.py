"""Stage dependency graphs.

Each pipeline version is declared once as a list of edges. StageGraph wraps a
NetworkX DiGraph with the queries the orchestrator needs: topological order,
predecessors, descendants and terminal stages.
"""

from __future__ import annotations

from functools import cache

import networkx as nx

from storyloom.contracts import PipelineVersion, PreconditionError, StageName


class GraphValidationError(Exception):
    """Raised when a pipeline declaration is not a valid DAG."""


# Declarative pipelines: (upstream, downstream) edges per version.
PIPELINE_DEFINITIONS: dict[PipelineVersion, tuple[tuple[StageName, StageName], ...]] = {
    PipelineVersion.LEGACY: (
        (StageName.PAGES, StageName.IMAGES),
        (StageName.IMAGES, StageName.AUDIO),
    ),
    PipelineVersion.V2: (
        (StageName.PAGES, StageName.IMAGES),
        (StageName.IMAGES, StageName.FINALIZE),
        (StageName.FINALIZE, StageName.PRINTABLE),
    ),
}


class StageGraph:
    """Dependency graph for one pipeline version.

    Immutable after construction. Stage order is deterministic: ties in the
    topological sort are broken by declaration order.
    """

    def __init__(self, version: PipelineVersion, edges: tuple[tuple[StageName, StageName], ...]) -> None:
        graph: nx.DiGraph[StageName] = nx.DiGraph()
        for upstream, downstream in edges:
            graph.add_edge(upstream, downstream)

        if graph.number_of_nodes() == 0:
            raise GraphValidationError(f"Pipeline {version} declares no stages")
        if not nx.is_directed_acyclic_graph(graph):
            cycle = nx.find_cycle(graph)
            raise GraphValidationError(f"Pipeline {version} contains a cycle: {cycle}")

        declared = list(dict.fromkeys(stage for edge in edges for stage in edge))
        rank = {stage: i for i, stage in enumerate(declared)}

        self._version = version
        self._graph = graph
        self._order: tuple[StageName, ...] = tuple(nx.lexicographical_topological_sort(graph, key=lambda s: rank[s]))

    @property
    def version(self) -> PipelineVersion:
        return self._version

    @property
    def stages(self) -> tuple[StageName, ...]:
        """All stages in topological order."""
        return self._order

    def __contains__(self, stage: object) -> bool:
        return stage in self._graph

    def require(self, stage: StageName) -> StageName:
        """Return stage if it belongs to this pipeline.

        Raises:
            PreconditionError: If the stage is not part of this pipeline
        """
        if stage not in self._graph:
            raise PreconditionError(f"Stage '{stage}' is not part of the {self._version} pipeline (stages: {list(self._order)})")
        return stage

    def predecessors(self, stage: StageName) -> tuple[StageName, ...]:
        return tuple(sorted(self._graph.predecessors(self.require(stage)), key=self._order.index))

    def descendants(self, stage: StageName) -> tuple[StageName, ...]:
        """All stages reachable from stage, in topological order."""
        reachable = nx.descendants(self._graph, self.require(stage))
        return tuple(s for s in self._order if s in reachable)

    @property
    def roots(self) -> tuple[StageName, ...]:
        return tuple(s for s in self._order if self._graph.in_degree(s) == 0)

    @property
    def terminal_stages(self) -> tuple[StageName, ...]:
        """Stages with no dependents.

        Not a completion test: an upstream stage can be idle again after a forced
        reset while these are still ready.
        """
        return tuple(s for s in self._order if self._graph.out_degree(s) == 0)


@cache
def graph_for(version: PipelineVersion) -> StageGraph:
    """Get the (shared, immutable) graph for a pipeline version."""
    return StageGraph(version, PIPELINE_DEFINITIONS[version])
