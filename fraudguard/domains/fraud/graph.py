"""Transaction graph analysis: bounded reachability and circular-flow detection.

A circular network (A -> B -> C -> A) returns funds to their origin through
intermediaries and is invisible to pairwise back-and-forth checks. The graph
is built only over a candidate set already narrowed to one user's
neighbourhood, so the cost is bounded by the candidate count rather than the
user base. Reads only; no locking.
"""

from datetime import UTC, datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from . import history
from .config import FraudConfig, default_config
from .models import TransactionEdge

logger = structlog.get_logger()


def find_cycle(edges: list[tuple[str, str]], candidates: list[str]) -> list[str] | None:
    """Return the first directed cycle found among ``candidates``, or None.

    Each candidate is tried as the start node; an iterative depth-first
    search with an explicit stack follows outgoing edges and stops as soon as
    an edge leads back to the start. User ids are mapped to integer indices
    so the visited and on-path sets are flat arrays.
    """
    index = {user_id: i for i, user_id in enumerate(dict.fromkeys(candidates))}
    ids = list(index)
    adjacency: list[list[int]] = [[] for _ in ids]
    seen_edges: set[tuple[int, int]] = set()
    for payer, payee in edges:
        if payer not in index or payee not in index or payer == payee:
            continue
        edge = (index[payer], index[payee])
        if edge not in seen_edges:
            seen_edges.add(edge)
            adjacency[edge[0]].append(edge[1])

    for start in range(len(ids)):
        visited = bytearray(len(ids))
        visited[start] = 1
        path = [start]
        stack = [iter(adjacency[start])]

        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                stack.pop()
                path.pop()
                continue
            if nxt == start:
                return [ids[i] for i in path]
            if not visited[nxt]:
                visited[nxt] = 1
                path.append(nxt)
                stack.append(iter(adjacency[nxt]))

    return None


def has_directed_cycle(edges: list[tuple[str, str]], candidates: list[str]) -> bool:
    return find_cycle(edges, candidates) is not None


class TransactionGraphAnalyzer:
    """Builds bounded transaction graphs from payment history."""

    async def get_connected_users(
        self,
        root: str,
        session: AsyncSession,
        depth: int = 2,
    ) -> set[str]:
        """Users reachable from ``root`` within ``depth`` payment hops, excluding root."""
        seen: set[str] = {root}
        connected: set[str] = set()
        frontier: set[str] = {root}

        for level in range(depth):
            if not frontier:
                break
            neighbours = await history.counterparties(session, frontier)
            next_level = neighbours - seen
            seen |= next_level
            connected |= next_level
            frontier = next_level
            logger.debug("graph_level_expanded", root=root, level=level + 1, size=len(next_level))

        return connected

    async def load_edges(
        self,
        candidates: set[str],
        session: AsyncSession,
        config: FraudConfig = default_config,
        now: datetime | None = None,
    ) -> list[TransactionEdge]:
        now = now or datetime.now(UTC)
        return await history.edges_among(session, candidates, now - config.network.circular_window)

    async def find_circular_network(
        self,
        candidate_users: list[str] | set[str],
        session: AsyncSession,
        config: FraudConfig = default_config,
        now: datetime | None = None,
    ) -> list[str] | None:
        """The first payment cycle among the candidates within the window, if any."""
        candidates = list(dict.fromkeys(candidate_users))
        if len(candidates) < config.network.circular_min_candidates:
            return None

        edges = await self.load_edges(set(candidates), session, config, now)
        cycle = find_cycle([(e.payer_id, e.payee_id) for e in edges], candidates)
        if cycle:
            logger.warning(
                "circular_transaction_network_detected",
                cycle=cycle,
                candidate_count=len(candidates),
                edge_count=len(edges),
            )
        return cycle

    async def is_circular_transaction_network(
        self,
        candidate_users: list[str] | set[str],
        session: AsyncSession,
        config: FraudConfig = default_config,
        now: datetime | None = None,
    ) -> bool:
        cycle = await self.find_circular_network(candidate_users, session, config, now)
        return cycle is not None
