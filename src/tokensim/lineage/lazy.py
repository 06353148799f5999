"""Lazy, virtualized loading of large lineage trees.

The tree is rooted at the traced token; a node's children are the
token's parents in the token graph, so expanding a node walks one
generation further back. Only initial_depth generations are built
eagerly. Deeper generations load on demand, either directly through
expand_node() or through the debounced load queue that
get_visible_nodes() feeds with rows near the viewport.

Debouncing runs on the injected clock: queue_for_loading() pushes the
due time out by debounce_ms, and process_load_queue() does nothing until
that time has passed (unless forced). Batches run on a thread pool with
max_concurrent_loads workers, and a token is never loaded twice at once.
"""

from __future__ import annotations

import math
import uuid
from collections import deque
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from threading import Lock
from types import TracebackType
from typing import Any, Self

from tokensim.contracts.events import LazyNodesLoaded
from tokensim.contracts.lineage import OperationInfo, TokenLineage
from tokensim.core.config import LazyLoaderConfig
from tokensim.core.events import EventBusProtocol, NullEventBus
from tokensim.core.logging import get_logger
from tokensim.engine.clock import DEFAULT_CLOCK, Clock
from tokensim.lineage.graph import TokenGraph

logger = get_logger(__name__)

LazyObserver = Callable[[list["LazyLineageNode"]], None]


@dataclass(eq=False)
class LazyLineageNode:
    """A row of the lazy lineage tree.

    Attributes:
        depth: Generations from the root token
        is_loaded: Children have been materialized
        has_children: The token has parents in the graph
        parent: Tree node one generation closer to the root
        load_error: Message of the last failed child load
    """

    token_id: str
    value: Any
    created_at: float
    origin_node_id: str
    depth: int
    is_loaded: bool = False
    is_loading: bool = False
    has_children: bool = False
    children: list[LazyLineageNode] = field(default_factory=list)
    parent: LazyLineageNode | None = field(default=None, repr=False)
    operation: OperationInfo | None = None
    load_error: str | None = None


@dataclass(frozen=True, slots=True)
class ViewportInfo:
    start_index: int
    end_index: int
    scroll_top: float
    container_height: float
    item_height: float
    offset_y: float
    total_height: float


@dataclass(frozen=True, slots=True)
class LoadingStats:
    active_loads: int
    queued_loads: int
    total_batches: int
    average_load_time_ms: float


class VirtualScrollHelper:
    """Computes the visible row range of a fixed-row-height list."""

    def __init__(self, item_height: float, container_height: float) -> None:
        if item_height <= 0:
            raise ValueError(f"item_height must be positive, got {item_height}")
        self._item_height = item_height
        self._container_height = container_height
        self._scroll_top = 0.0
        self._total_items = 0

    def update_scroll(self, scroll_top: float, total_items: int) -> ViewportInfo:
        """Visible range for a scroll position, with one row of overscan."""
        self._scroll_top = scroll_top
        self._total_items = total_items
        start = int(scroll_top // self._item_height)
        visible = math.ceil(self._container_height / self._item_height)
        end = min(start + visible + 1, total_items)
        return ViewportInfo(
            start_index=start,
            end_index=end,
            scroll_top=scroll_top,
            container_height=self._container_height,
            item_height=self._item_height,
            offset_y=self.get_offset_y(start),
            total_height=self.get_total_height(),
        )

    def get_total_height(self) -> float:
        return self._total_items * self._item_height

    def get_offset_y(self, start_index: int) -> float:
        return start_index * self._item_height

    def update_dimensions(self, item_height: float, container_height: float) -> None:
        if item_height <= 0:
            raise ValueError(f"item_height must be positive, got {item_height}")
        self._item_height = item_height
        self._container_height = container_height


class ProgressiveDisclosureManager:
    """Expanded/loading bookkeeping with a cap on expanded nodes.

    When the cap is reached, expanding another node evicts the one that
    was expanded longest ago.
    """

    def __init__(self, max_expanded_nodes: int = 100) -> None:
        if max_expanded_nodes <= 0:
            raise ValueError(f"max_expanded_nodes must be positive, got {max_expanded_nodes}")
        self._max_expanded = max_expanded_nodes
        # dict as an insertion-ordered set
        self._expanded: dict[str, None] = {}
        self._loading: set[str] = set()

    def is_expanded(self, token_id: str) -> bool:
        return token_id in self._expanded

    def is_loading(self, token_id: str) -> bool:
        return token_id in self._loading

    def expand(self, token_id: str) -> str | None:
        """Mark token_id expanded; returns the evicted token id, if any."""
        if token_id in self._expanded:
            return None
        evicted = None
        if len(self._expanded) >= self._max_expanded:
            evicted = next(iter(self._expanded))
            del self._expanded[evicted]
        self._expanded[token_id] = None
        return evicted

    def collapse(self, token_id: str) -> None:
        self._expanded.pop(token_id, None)

    def mark_loading(self, token_id: str) -> None:
        self._loading.add(token_id)

    def mark_loaded(self, token_id: str) -> None:
        self._loading.discard(token_id)

    def get_expanded_nodes(self) -> list[str]:
        return list(self._expanded)

    def clear(self) -> None:
        self._expanded.clear()
        self._loading.clear()

    def get_stats(self) -> dict[str, int]:
        return {
            "expanded_count": len(self._expanded),
            "loading_count": len(self._loading),
            "max_expanded": self._max_expanded,
        }


class LazyLineageLoader:
    """Builds and incrementally loads a lineage tree over a token graph.

    Example:
        loader = LazyLineageLoader(graph, LazyLoaderConfig(initial_depth=2))
        root = loader.create_lazy_tree(result.lineage)
        rows = loader.get_visible_nodes(root, start=0, count=30)
        loader.process_load_queue(force=True)
    """

    def __init__(
        self,
        graph: TokenGraph,
        config: LazyLoaderConfig | None = None,
        *,
        clock: Clock | None = None,
        event_bus: EventBusProtocol | None = None,
    ) -> None:
        self._graph = graph
        self._config = config or LazyLoaderConfig()
        self._clock = clock or DEFAULT_CLOCK
        self._event_bus = event_bus or NullEventBus()
        self.disclosure = ProgressiveDisclosureManager(self._config.max_expanded_nodes)

        self._lock = Lock()
        self._nodes: dict[str, LazyLineageNode] = {}
        self._queue: deque[str] = deque()
        self._queued: set[str] = set()
        self._due_at: float | None = None
        self._in_flight: set[str] = set()
        self._active_loads = 0
        self._batches_started: dict[str, float] = {}
        self._load_times: list[float] = []
        self._observers: list[LazyObserver] = []
        self._pool = ThreadPoolExecutor(max_workers=self._config.max_concurrent_loads, thread_name_prefix="lineage-load")

    @property
    def config(self) -> LazyLoaderConfig:
        return self._config

    # -- tree construction ----------------------------------------------

    def _make_node(self, token_id: str, depth: int, parent: LazyLineageNode | None = None) -> LazyLineageNode | None:
        info = self._graph.get_node(token_id)
        if info is None:
            return None
        node = LazyLineageNode(
            token_id=token_id,
            value=info.value,
            created_at=info.created_at,
            origin_node_id=info.origin_node_id,
            depth=depth,
            has_children=bool(self._graph.get_parents(token_id)),
            parent=parent,
            operation=info.operation,
        )
        with self._lock:
            self._nodes.setdefault(token_id, node)
        return node

    def create_lazy_tree(self, lineage: TokenLineage) -> LazyLineageNode:
        """Root node for lineage's target with initial_depth generations attached.

        Each ancestor hangs under its next hop toward the target, so every
        token appears once. Nodes on the last eager generation keep
        is_loaded False and load on expansion.

        Raises:
            KeyError: If the target token is not in the graph
        """
        target = lineage.target_token
        root = self._make_node(target.id, 0)
        if root is None:
            raise KeyError(f"Token not found: {target.id}")

        tree: dict[str, LazyLineageNode] = {root.token_id: root}
        initial_depth = self._config.initial_depth
        root.is_loaded = initial_depth > 0 or not root.has_children

        for ancestor in sorted(lineage.all_ancestors, key=lambda a: a.generation_level):
            if ancestor.generation_level > initial_depth:
                continue
            next_hop = ancestor.contribution_path[1] if len(ancestor.contribution_path) > 1 else root.token_id
            tree_parent = tree.get(next_hop)
            if tree_parent is None:
                continue
            node = self._make_node(ancestor.id, ancestor.generation_level, tree_parent)
            if node is None:
                continue
            node.is_loaded = ancestor.generation_level < initial_depth or not node.has_children
            tree_parent.children.append(node)
            tree[node.token_id] = node

        return root

    # -- loading --------------------------------------------------------

    def load_children(self, node: LazyLineageNode) -> list[LazyLineageNode]:
        """Materialize node's children (its token's parents) if not done yet."""
        with self._lock:
            if node.is_loaded or node.is_loading or node.token_id in self._in_flight:
                return node.children
            node.is_loading = True
            self._in_flight.add(node.token_id)
            self.disclosure.mark_loading(node.token_id)
        self._notify([node])

        try:
            children = [
                child
                for child in (self._make_node(pid, node.depth + 1, node) for pid in self._graph.get_parents(node.token_id))
                if child is not None
            ]
        except Exception as exc:
            node.load_error = str(exc)
            raise
        finally:
            with self._lock:
                node.is_loading = False
                self._in_flight.discard(node.token_id)
                self.disclosure.mark_loaded(node.token_id)

        node.children = children
        node.is_loaded = True
        node.load_error = None
        self._notify([node, *children])
        return children

    def load_batch(self, token_ids: Sequence[str], depth: int) -> list[LazyLineageNode]:
        """Detached nodes for up to batch_size tokens; unknown tokens are skipped."""
        batch_id = f"batch_{uuid.uuid4().hex[:8]}"
        with self._lock:
            self._batches_started[batch_id] = self._clock.now_ms()
        try:
            nodes = []
            for token_id in token_ids[: self._config.batch_size]:
                node = self._make_node(token_id, depth)
                if node is not None:
                    node.is_loaded = not node.has_children
                    nodes.append(node)
            return nodes
        finally:
            self._finish_batch(batch_id)

    def _finish_batch(self, batch_id: str) -> None:
        with self._lock:
            started = self._batches_started.pop(batch_id, None)
            # None when clear() ran while the batch was in flight
            if started is not None:
                self._load_times.append(self._clock.now_ms() - started)

    def queue_for_loading(self, token_ids: Sequence[str]) -> None:
        """Queue tokens for child loading and restart the debounce window."""
        with self._lock:
            for token_id in token_ids:
                if token_id not in self._queued:
                    self._queued.add(token_id)
                    self._queue.append(token_id)
            self._due_at = self._clock.now_ms() + self._config.debounce_ms

    def process_load_queue(self, *, force: bool = False) -> list[str]:
        """Load children for queued tokens once the debounce window has passed.

        Returns:
            Token ids whose children were loaded by this call
        """
        with self._lock:
            if not self._queue:
                return []
            if not force and self._due_at is not None and self._clock.now_ms() < self._due_at:
                return []
            pending = list(self._queue)
            self._queue.clear()
            self._queued.clear()
            self._due_at = None

        size = self._config.batch_size
        batches = [pending[i : i + size] for i in range(0, len(pending), size)]
        futures = [self._pool.submit(self._load_queued_batch, batch) for batch in batches]

        loaded: list[str] = []
        for future in futures:
            children = future.result()
            if children:
                self._event_bus.emit(LazyNodesLoaded(token_ids=tuple(children), children=children))
            loaded.extend(children)

        logger.debug("lazy_batches_loaded", batches=len(batches), tokens=len(loaded))
        return loaded

    def _load_queued_batch(self, token_ids: list[str]) -> dict[str, tuple[str, ...]]:
        batch_id = f"batch_{uuid.uuid4().hex[:8]}"
        with self._lock:
            self._active_loads += 1
            self._batches_started[batch_id] = self._clock.now_ms()
        try:
            loaded: dict[str, tuple[str, ...]] = {}
            for token_id in token_ids:
                with self._lock:
                    node = self._nodes.get(token_id)
                if node is None or node.is_loaded:
                    continue
                loaded[token_id] = tuple(child.token_id for child in self.load_children(node))
            return loaded
        finally:
            with self._lock:
                self._active_loads -= 1
            self._finish_batch(batch_id)

    # -- viewport -------------------------------------------------------

    @staticmethod
    def flatten(root: LazyLineageNode) -> list[LazyLineageNode]:
        """Depth-first, pre-order rows of the materialized tree."""
        rows: list[LazyLineageNode] = []
        stack = [root]
        while stack:
            node = stack.pop()
            rows.append(node)
            stack.extend(reversed(node.children))
        return rows

    def get_visible_nodes(self, root: LazyLineageNode, start: int, count: int) -> list[LazyLineageNode]:
        """Rows in [start, start + count), queueing unloaded rows near that range.

        With virtualization disabled every row is returned.
        """
        rows = self.flatten(root)
        if not self._config.enable_virtualization:
            return rows

        start = max(0, start)
        end = min(len(rows), start + count)
        threshold = self._config.preload_threshold
        nearby = rows[max(0, start - threshold) : min(len(rows), end + threshold)]
        to_preload = [n.token_id for n in nearby if n.has_children and not n.is_loaded and not n.is_loading]
        if to_preload:
            self.queue_for_loading(to_preload)
        return rows[start:end]

    def expand_node(self, node: LazyLineageNode) -> list[LazyLineageNode]:
        self.disclosure.expand(node.token_id)
        if not node.has_children or node.is_loaded:
            return node.children
        return self.load_children(node)

    def collapse_node(self, node: LazyLineageNode, *, unload_children: bool = False) -> None:
        """Collapse a node; with unload_children its subtree is dropped to free memory."""
        self.disclosure.collapse(node.token_id)
        if unload_children:
            self._unload(node)

    def _unload(self, node: LazyLineageNode) -> None:
        stack = [node]
        while stack:
            current = stack.pop()
            stack.extend(current.children)
            with self._lock:
                for child in current.children:
                    if self._nodes.get(child.token_id) is child:
                        del self._nodes[child.token_id]
            current.children = []
            current.is_loaded = False

    # -- observers and stats --------------------------------------------

    def subscribe(self, observer: LazyObserver) -> Callable[[], None]:
        """Register an observer of loading-state changes; returns its unsubscribe function."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self, nodes: list[LazyLineageNode]) -> None:
        for observer in list(self._observers):
            observer(nodes)

    def get_loading_stats(self) -> LoadingStats:
        with self._lock:
            average = sum(self._load_times) / len(self._load_times) if self._load_times else 0.0
            return LoadingStats(
                active_loads=self._active_loads,
                queued_loads=len(self._queue),
                total_batches=len(self._load_times) + len(self._batches_started),
                average_load_time_ms=average,
            )

    def clear(self) -> None:
        """Drop queued work, batch statistics and disclosure state."""
        with self._lock:
            self._queue.clear()
            self._queued.clear()
            self._due_at = None
            self._batches_started.clear()
            self._load_times.clear()
        self.disclosure.clear()

    def close(self) -> None:
        self._pool.shutdown(wait=True)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
