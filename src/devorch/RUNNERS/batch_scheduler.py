# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Partitioning of a resolved service order into batches that may run concurrently.
"""
import logging
from typing import Dict, Iterable, List, Mapping, Set, Union

from ..MODELS.orchestrator_config import Strategy

logger = logging.getLogger(__name__)


class BatchScheduler:
    """
    Groups a dependency-sound order into batches according to a strategy.

    - ``sequential``: one unit per batch, in resolved order.
    - ``parallel``: consecutive chunks of at most ``max_concurrency`` units,
      trusting the order alone.
    - ``optimized``: greedy wavefront. A unit joins the current batch only if
      all of its dependencies sit in an earlier, closed batch. The batch
      closes when nothing else can join or it is full.
    - ``aggressive``: like optimized without the size bound.
    """

    def schedule(
        self,
        order: List[str],
        dependency_map: Mapping[str, Iterable[str]],
        strategy: Union[Strategy, str] = Strategy.OPTIMIZED,
        max_concurrency: int = 1,
    ) -> List[List[str]]:
        """
        Partitions an order into batches.

        :param order: Resolved order; every dependency precedes its dependents.
        :param dependency_map: Each name's prerequisites. For stop runs pass
                               the dependents map so dependents stop first.
        :param strategy: Batching strategy.
        :param max_concurrency: Upper bound on batch size, at least 1.
        :return: Batches of names, to be run strictly one after another.
        """
        strategy = Strategy(strategy)
        max_concurrency = max(1, int(max_concurrency))

        if strategy == Strategy.SEQUENTIAL:
            return [[name] for name in order]
        if strategy == Strategy.PARALLEL:
            return [order[i:i + max_concurrency] for i in range(0, len(order), max_concurrency)]

        limit = None if strategy == Strategy.AGGRESSIVE else max_concurrency
        return self._wavefront(order, dependency_map, limit)

    def _wavefront(
        self,
        order: List[str],
        dependency_map: Mapping[str, Iterable[str]],
        limit,
    ) -> List[List[str]]:
        scheduled = set(order)
        requires: Dict[str, Set[str]] = {
            name: set(dependency_map.get(name, ())) & scheduled for name in order
        }

        batches: List[List[str]] = []
        closed: Set[str] = set()
        remaining = list(order)

        while remaining:
            batch: List[str] = []
            for name in remaining:
                if limit is not None and len(batch) >= limit:
                    break
                if requires[name] <= closed:
                    batch.append(name)

            if not batch:
                # Only reachable with a cyclic map; the resolver rules that out
                forced = remaining[0]
                logger.warning(
                    "No schedulable unit among %d remaining; forcing %s (unmet: %s)",
                    len(remaining), forced, ", ".join(sorted(requires[forced] - closed)),
                )
                batch.append(forced)

            members = set(batch)
            remaining = [name for name in remaining if name not in members]
            closed |= members
            batches.append(batch)

        return batches

    @staticmethod
    def batch_index(batches: List[List[str]]) -> Dict[str, int]:
        """Maps every scheduled name to the index of its batch."""
        return {name: i for i, batch in enumerate(batches) for name in batch}
