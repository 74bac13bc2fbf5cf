"""
Distributed block solve

Splits the working range into blocks, solves every block independently
(builder -> partitioner -> solver), optionally checkpoints the solved blocks,
then reconciles them and hands the final models to the result sink layer by
layer.

The merge can also run in a separate process from checkpoints written by
earlier solve runs (merge_checkpoints).
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import logging

from tqdm import tqdm

from stacksolve.core.block import Block, SolveSet, next_block_id
from stacksolve.core.errors import SolveError, StackSolveError
from stacksolve.core.graph_builder import CorrespondenceGraphBuilder
from stacksolve.core.inclusion import InclusionPolicy
from stacksolve.core.partition import partition_block
from stacksolve.core.reconcile import BlockReconciler, Reconciliation
from stacksolve.core.solver import AnnealedSolver, SolveReport
from stacksolve.quality.errors import (
    ErrorFilter,
    build_diagnostics,
    compute_tile_errors,
    find_problem_tiles,
    summarize,
    write_diagnostics,
)
from stacksolve.utils.checkpoint_store import CheckpointStore
from stacksolve.utils.config import SolveParameters
from stacksolve.utils.memory_manager import MemoryManager

logger = logging.getLogger(__name__)


class SolveSetFactory:
    """Cut a layer range into blocks of `block_size` layers sharing `block_overlap` layers"""

    def __init__(self, min_z: int, max_z: int, block_size: Optional[int] = None, block_overlap: int = 0):
        if min_z > max_z:
            raise ValueError(f"min_z {min_z} > max_z {max_z}")
        if block_size is not None and not 0 <= block_overlap < block_size:
            raise ValueError(f"block_overlap must be in [0, {block_size}), got {block_overlap}")
        self.min_z = int(min_z)
        self.max_z = int(max_z)
        self.block_size = block_size
        self.block_overlap = block_overlap

    def ranges(self) -> List[Tuple[int, int]]:
        if self.block_size is None:
            return [(self.min_z, self.max_z)]

        ranges = []
        start = self.min_z
        while True:
            end = min(start + self.block_size - 1, self.max_z)
            ranges.append((start, end))
            if end >= self.max_z:
                break
            start = end - self.block_overlap + 1
        return ranges

    def create(self) -> SolveSet:
        return SolveSet([Block(lo, hi) for lo, hi in self.ranges()])


class DistributedSolve:
    """Solve, checkpoint and reconcile the blocks of one working range"""

    def __init__(
        self,
        source,
        params: SolveParameters,
        sink=None,
        store: Optional[CheckpointStore] = None,
        memory_manager: Optional[MemoryManager] = None
    ):
        """
        Args:
            source: RenderSource with tile specs and point matches
            params: Solve parameters
            sink: ResultSink receiving final models per layer (optional)
            store: Checkpoint store (default: one in params.checkpoint_dir, if set)
            memory_manager: Memory tracker (default: a new MemoryManager)
        """
        self.source = source
        self.params = params
        self.sink = sink
        if store is None and params.checkpoint_dir:
            store = CheckpointStore(params.checkpoint_dir, min_entries=params.min_checkpoints)
        self.store = store
        self.memory_manager = memory_manager or MemoryManager()
        self.reports: Dict[int, SolveReport] = {}
        self.diagnostics: Dict[str, Dict] = {}
        self.solver = AnnealedSolver.from_parameters(params)
        self.reconciler = BlockReconciler.from_parameters(params)

    def working_range(self) -> Tuple[int, int]:
        """Configured range, completed from the source's z values"""
        min_z, max_z = self.params.min_z, self.params.max_z
        if min_z is None or max_z is None:
            z_values = self.source.get_z_values(min_z, max_z)
            if not z_values:
                raise SolveError(f"Stack {self.params.stack} has no layers in the requested range")
            min_z = z_values[0] if min_z is None else min_z
            max_z = z_values[-1] if max_z is None else max_z
        return int(round(min_z)), int(round(max_z))

    def create_solve_set(self) -> SolveSet:
        min_z, max_z = self.working_range()
        return SolveSetFactory(min_z, max_z, self.params.block_size, self.params.block_overlap).create()

    def _policy(self, block: Block) -> InclusionPolicy:
        return InclusionPolicy(
            block.min_z,
            block.max_z,
            exclude_tile_ids=self.params.exclude_tile_ids,
            z_distance_limits=self.params.z_distance_limits,
            link_rules=self.params.link_rules,
        )

    def _builder(self, block: Block) -> CorrespondenceGraphBuilder:
        first = self.params.stages()[0]
        return CorrespondenceGraphBuilder(
            self.source,
            self._policy(block),
            regularizer=self.params.regularizer,
            initial_lambda=first.lambda_,
            lambda_translation=first.lambda_translation,
            max_num_matches=self.params.max_num_matches,
        )

    def solve_block(self, block: Block) -> List[Block]:
        """
        Build, partition and solve one block.

        Returns:
            The solved component blocks (empty when the block has no tiles)

        Raises:
            StackSolveError: the block could not be solved
        """
        self._builder(block).build(block)
        if not len(block):
            logger.warning(f"Block {block.block_id} (z {block.min_z}-{block.max_z}) has no connected tiles, skipping")
            return []

        components = partition_block(block)
        for component in components:
            report = self.solver.solve(component)
            self.reports[component.block_id] = report

            errors = compute_tile_errors(component.graph, models=component.new_models)
            last_lambda = report.stages[-1].lambda_ if report.stages else None
            component.diagnostics = build_diagnostics(errors, {t: last_lambda for t in component.tile_ids})
            find_problem_tiles(errors)

            cross = summarize(compute_tile_errors(component.graph, ErrorFilter.CROSS_LAYER_ONLY,
                                                  models=component.new_models))
            logger.info(f"Block {component.block_id}: cross-layer error mean {cross['mean']:.3f} px, "
                        f"max {cross['max']:.3f} px")

        return components

    def _solve_tracked(self, block: Block) -> List[Block]:
        with self.memory_manager.track_operation(f"block_{block.block_id}"):
            return self.solve_block(block)

    def _assign_component_ids(self, results: Dict[int, List[Block]]) -> List[Block]:
        """
        Give split components fresh ids in (parent order, component order).

        Components are created on worker threads, so the ids they got there
        depend on completion order.
        """
        solved = []
        for index in sorted(results):
            components = results[index]
            if len(components) > 1:
                for component in components:
                    old_id = component.block_id
                    component.block_id = next_block_id()
                    self.reports[component.block_id] = self.reports.pop(old_id)
                    self.reports[component.block_id].block_id = component.block_id
            solved.extend(components)
        return solved

    def solve_all(self, solve_set: SolveSet) -> SolveSet:
        """
        Solve every block of a SolveSet on `block_threads` threads.

        Solved blocks are checkpointed after all threads joined, including
        when other blocks failed.

        Raises:
            SolveError: listing every block that failed
        """
        results: Dict[int, List[Block]] = {}
        failures = []

        with ThreadPoolExecutor(max_workers=self.params.block_threads) as executor:
            futures = {executor.submit(self._solve_tracked, block): i for i, block in enumerate(solve_set)}
            for future in tqdm(as_completed(futures), total=len(futures), desc="Solving blocks", unit="block"):
                index = futures[future]
                block = solve_set.blocks[index]
                try:
                    results[index] = future.result()
                except StackSolveError as e:
                    logger.error(f"Block {block.block_id} (z {block.min_z}-{block.max_z}) failed: {e}")
                    failures.append((block, e))

        self.memory_manager.log_memory_status("blocks solved")
        logger.info(f"Peak memory while solving: {self.memory_manager.get_peak_usage():.2f} GB")

        solved = self._assign_component_ids(results)
        if self.store is not None:
            for component in solved:
                self.store.save(component)

        if failures:
            failures.sort(key=lambda f: f[0].min_z)
            detail = '; '.join(f"block {b.block_id} z {b.min_z}-{b.max_z}: {e}" for b, e in failures)
            raise SolveError(f"{len(failures)} of {len(solve_set)} blocks failed: {detail}")

        return SolveSet(solved)

    def run(self) -> Reconciliation:
        """
        Solve the working range and emit the final models to the sink.

        Raises:
            SolveError: one or more blocks failed (nothing is emitted)
            ReconciliationError: the solved blocks cannot be merged
        """
        solve_set = self.create_solve_set()
        logger.info(f"Solving stack {self.params.stack}: z {solve_set.min_z}-{solve_set.max_z} "
                    f"in {len(solve_set)} blocks")
        self.memory_manager.log_memory_status("start")

        solved = self.solve_all(solve_set)
        return self.merge(solved)

    def merge_checkpoints(self) -> Reconciliation:
        """Reconcile blocks written to the checkpoint store by earlier solve runs"""
        if self.store is None:
            raise SolveError("No checkpoint store configured")
        blocks = self.store.load_all(self.params.min_checkpoints)
        return self.merge(SolveSet(blocks))

    def merge(self, solve_set: SolveSet) -> Reconciliation:
        """Reconcile solved blocks, write diagnostics and emit models per layer"""
        reconciliation = self.reconciler.reconcile(solve_set)

        diagnostics = {}
        for block in solve_set:
            diagnostics.update(block.diagnostics)
        for tile_id, lam in reconciliation.lambdas.items():
            diagnostics.setdefault(tile_id, {'avg_error': 0.0, 'max_error': 0.0})['lambda'] = lam
        self.diagnostics = dict(sorted(diagnostics.items()))

        if self.store is not None:
            write_diagnostics(Path(self.store.root) / "diagnostics.json", self.diagnostics)

        if self.sink is not None:
            layers = reconciliation.models_by_layer()
            for z, models in layers.items():
                self.sink.save_resolved_tiles(z, models)
            logger.info(f"Saved {len(reconciliation.models)} tiles in {len(layers)} layers")

        return reconciliation
