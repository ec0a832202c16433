import functools
import heapq
import itertools
import logging
import multiprocessing
import multiprocessing.dummy
import operator
import signal
import threading
from collections.abc import Iterator
from typing import (TypeVar, Union, Iterable as IterableType, Iterator as IteratorType, Any, List, Dict,
                    Optional, Callable, NamedTuple, Tuple)


T = TypeVar('T')
U = TypeVar('U')
K = TypeVar('K')

logger = logging.getLogger(__name__)

_MISSING = object()


class StreamError(Exception):
    pass


class ReuseError(StreamError):
    def __init__(self):
        super().__init__('stream has already been operated upon or closed')


class DuplicateKeyError(StreamError, KeyError):
    def __init__(self, key: Any, existing: Any, value: Any):
        super().__init__(f'Duplicate key {key} (attempted merging values {existing} and {value})')
        self.key = key
        self.existing = existing
        self.value = value

    def __str__(self):
        return self.args[0]

    def __reduce__(self):
        return self.__class__, (self.key, self.existing, self.value)


class NoValuePresentError(StreamError, LookupError):
    pass


class Option:
    """
    A container which may or may not hold a value.
    Returned by terminal operations that have nothing to report on an empty stream.
    """
    __slots__ = ('_value',)

    def __init__(self, value: Any = _MISSING):
        self._value = value

    @classmethod
    def of(cls, value: T) -> 'Option':
        if value is None:
            raise ValueError('Option.of() does not accept None, use Option.of_nullable()')
        return cls(value)

    @classmethod
    def of_nullable(cls, value: Optional[T]) -> 'Option':
        return cls.empty() if value is None else cls(value)

    @classmethod
    def empty(cls) -> 'Option':
        return _EMPTY

    def is_present(self) -> bool:
        return self._value is not _MISSING

    def is_empty(self) -> bool:
        return self._value is _MISSING

    def get(self) -> Any:
        if self._value is _MISSING:
            raise NoValuePresentError('No value present')
        return self._value

    def or_else(self, other: Any) -> Any:
        return other if self._value is _MISSING else self._value

    def or_else_get(self, fn: Callable[[], Any]) -> Any:
        return fn() if self._value is _MISSING else self._value

    def if_present(self, fn: Callable[[Any], Any]) -> None:
        if self._value is not _MISSING:
            fn(self._value)

    def map(self, fn: Callable[[Any], Any]) -> 'Option':
        """
        Transforms the value if there is one. A `None` result gives an empty Option.
        """
        if self._value is _MISSING:
            return self
        return Option.of_nullable(fn(self._value))

    def flat_map(self, fn: Callable[[Any], 'Option']) -> 'Option':
        """
        Like `map`, but `fn` returns an Option itself, which is returned as is.
        """
        if self._value is _MISSING:
            return self
        return fn(self._value)

    def filter(self, pred: Callable[[Any], bool]) -> 'Option':
        if self._value is _MISSING or pred(self._value):
            return self
        return _EMPTY

    def __eq__(self, other):
        if not isinstance(other, Option):
            return NotImplemented
        return self._value is other._value or self._value == other._value

    def __hash__(self):
        return hash(self._value) if self._value is not _MISSING else 0

    def __reduce__(self):
        # The emptiness sentinel is process-local
        if self._value is _MISSING:
            return Option.empty, ()
        return Option, (self._value,)

    def __repr__(self):
        if self._value is _MISSING:
            return 'Option.empty()'
        return f'Option.of({self._value!r})'


_EMPTY = Option()


class SummaryStatistics:
    """
    Count, sum, min, max and average of a sequence of numbers.
    `min` and `max` are `None` until a value has been accepted.
    """

    def __init__(self):
        self.count = 0
        self.sum = 0
        self.min = None
        self.max = None

    @property
    def average(self) -> float:
        return self.sum / self.count if self.count else 0.0

    def accept(self, value) -> None:
        self.count += 1
        self.sum += value
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)

    def combine(self, other: 'SummaryStatistics') -> 'SummaryStatistics':
        self.count += other.count
        self.sum += other.sum
        for bound in (other.min, other.max):
            if bound is not None:
                self.min = bound if self.min is None else min(self.min, bound)
                self.max = bound if self.max is None else max(self.max, bound)
        return self

    def __repr__(self):
        return (f'SummaryStatistics(count={self.count}, sum={self.sum}, min={self.min}, '
                f'average={self.average}, max={self.max})')


class Collector:
    """
    A mutable reduction:
        ``supplier()`` creates a fresh container

        ``accumulator(container, element)`` folds one element into it

        ``combiner(left, right)`` merges two containers and returns the result

        ``finisher(container)`` turns the container into the final result
    """

    def __init__(self, supplier: Callable[[], Any], accumulator: Callable[[Any, Any], Any],
                 combiner: Callable[[Any, Any], Any], finisher: Optional[Callable[[Any], Any]] = None):
        self.supplier = supplier
        self.accumulator = accumulator
        self.combiner = combiner
        self.finisher = finisher or _identity

    @classmethod
    def of(cls, supplier, accumulator, combiner, finisher=None) -> 'Collector':
        return cls(supplier, accumulator, combiner, finisher)


def _identity(x):
    return x


def _extend_list(left: list, right: list) -> list:
    left.extend(right)
    return left


def _union_set(left: set, right: set) -> set:
    left |= right
    return left


def _append_str(parts: list, item: Any) -> None:
    parts.append(str(item))


def _join(delimiter: str, prefix: str, suffix: str, parts: list) -> str:
    return prefix + delimiter.join(parts) + suffix


def _count_one(box: list, item: Any) -> None:
    box[0] += 1


def _add_mapped(fn: Callable, box: list, item: Any) -> None:
    box[0] += fn(item)


def _add_boxes(left: list, right: list) -> list:
    left[0] += right[0]
    return left


def _unbox(box: list) -> Any:
    return box[0]


def _average_box(box: list) -> float:
    total, count = box
    return total / count if count else 0.0


def _average_accumulate(fn: Callable, box: list, item: Any) -> None:
    box[0] += fn(item)
    box[1] += 1


def _average_combine(left: list, right: list) -> list:
    left[0] += right[0]
    left[1] += right[1]
    return left


def _summary_accept(fn: Callable, stats: SummaryStatistics, item: Any) -> None:
    stats.accept(fn(item))


def _group_accumulate(key_fn: Callable, downstream: Collector, groups: dict, item: Any) -> None:
    key = key_fn(item)
    if key not in groups:
        groups[key] = downstream.supplier()
    downstream.accumulator(groups[key], item)


def _group_combine(downstream: Collector, left: dict, right: dict) -> dict:
    for key, container in right.items():
        left[key] = downstream.combiner(left[key], container) if key in left else container
    return left


def _group_finish(downstream: Collector, groups: dict) -> dict:
    return {key: downstream.finisher(container) for key, container in groups.items()}


def _put(merge_fn: Optional[Callable], mapping: dict, key: Any, value: Any) -> None:
    if key in mapping:
        if merge_fn is None:
            raise DuplicateKeyError(key, mapping[key], value)
        mapping[key] = merge_fn(mapping[key], value)
    else:
        mapping[key] = value


def _map_accumulate(key_fn: Callable, value_fn: Callable, merge_fn: Optional[Callable], mapping: dict,
                    item: Any) -> None:
    _put(merge_fn, mapping, key_fn(item), value_fn(item))


def _map_combine(merge_fn: Optional[Callable], left: dict, right: dict) -> dict:
    for key, value in right.items():
        _put(merge_fn, left, key, value)
    return left


def _mapping_accumulate(fn: Callable, downstream: Collector, container: Any, item: Any) -> None:
    downstream.accumulator(container, fn(item))


def to_list() -> Collector:
    return Collector(list, list.append, _extend_list)


def to_set() -> Collector:
    return Collector(set, set.add, _union_set)


def joining(delimiter: str = '', prefix: str = '', suffix: str = '') -> Collector:
    """
    Concatenates the string form of each element in encounter order

    :param delimiter: Placed between consecutive elements
    :param prefix: Placed before the first element
    :param suffix: Placed after the last element
    """
    return Collector(list, _append_str, _extend_list, functools.partial(_join, delimiter, prefix, suffix))


def grouping_by(key_fn: Callable[[T], K], downstream: Optional[Collector] = None) -> Collector:
    """
    Groups elements by `key_fn`. Each group keeps the encounter order of its elements.

    :param key_fn: Classifies an element
    :param downstream: Collector applied to each group, defaults to `to_list()`
    :return: A collector producing a dict of key to collected group
    """
    downstream = downstream or to_list()
    return Collector(dict,
                     functools.partial(_group_accumulate, key_fn, downstream),
                     functools.partial(_group_combine, downstream),
                     functools.partial(_group_finish, downstream))


def to_map(key_fn: Callable[[T], K], value_fn: Optional[Callable[[T], U]] = None,
           merge_fn: Optional[Callable[[U, U], U]] = None) -> Collector:
    """
    Collects elements into a dict

    :param key_fn: Produces the key of an element
    :param value_fn: Produces the value of an element, defaults to the element itself
    :param merge_fn: Resolves a key collision as merge_fn(existing, new).
        Without it a collision raises DuplicateKeyError
    """
    return Collector(dict,
                     functools.partial(_map_accumulate, key_fn, value_fn or _identity, merge_fn),
                     functools.partial(_map_combine, merge_fn))


def counting() -> Collector:
    return Collector(functools.partial(list, (0,)), _count_one, _add_boxes, _unbox)


def summing(fn: Callable[[T], Any]) -> Collector:
    return Collector(functools.partial(list, (0,)), functools.partial(_add_mapped, fn), _add_boxes, _unbox)


def averaging(fn: Callable[[T], Any]) -> Collector:
    return Collector(functools.partial(list, (0, 0)), functools.partial(_average_accumulate, fn),
                     _average_combine, _average_box)


def summarizing(fn: Callable[[T], Any]) -> Collector:
    return Collector(SummaryStatistics, functools.partial(_summary_accept, fn), SummaryStatistics.combine)


def mapping(fn: Callable[[T], U], downstream: Collector) -> Collector:
    return Collector(downstream.supplier, functools.partial(_mapping_accumulate, fn, downstream),
                     downstream.combiner, downstream.finisher)


def _init_worker():
    signal.signal(signal.SIGINT, signal.SIG_IGN)


def map_fn(iterable: IterableType[T], fn: Callable[[T], U]) -> IterableType[U]:
    for item in iterable:
        yield fn(item)


def filter_fn(iterable: IterableType[T], fn: Callable[[T], bool]) -> IterableType[T]:
    for item in iterable:
        if fn(item):
            yield item


def flat_map_fn(iterable: IterableType[T], fn: Callable[[T], IterableType[U]]) -> IterableType[U]:
    for item in iterable:
        yield from fn(item)


def peek_fn(iterable: IterableType[T], fn: Callable[[T], Any]) -> IterableType[T]:
    for item in iterable:
        fn(item)
        yield item


def sorted_fn(iterable: IterableType[T], key: Optional[Callable], reverse: bool,
              comparator: Optional[Callable[[T, T], int]]) -> IterableType[T]:
    # Nothing is emitted before upstream is exhausted
    yield from _sorted_list(key, reverse, comparator, iterable)


def distinct_fn(iterable: IterableType[T]) -> IterableType[T]:
    seen = set()
    for item in iterable:
        if item not in seen:
            seen.add(item)
            yield item


def take_fn(iterable: IterableType[T], n: int) -> IterableType[T]:
    # Stops pulling once n items went through
    yield from itertools.islice(iterable, n)


def drop_fn(iterable: IterableType[T], n: int) -> IterableType[T]:
    yield from itertools.islice(iterable, n, None)


def _sort_key(key: Optional[Callable], comparator: Optional[Callable]) -> Optional[Callable]:
    return functools.cmp_to_key(comparator) if comparator is not None else key


def _sorted_list(key, reverse, comparator, iterable) -> list:
    return sorted(iterable, key=_sort_key(key, comparator), reverse=reverse)


stage_fns = {
    'filter': filter_fn,
    'map': map_fn,
    'flat_map': flat_map_fn,
    'peek': peek_fn,
    'sorted': sorted_fn,
    'distinct': distinct_fn,
    'take': take_fn,
    'drop': drop_fn,
}

STATELESS_STAGES = frozenset(('filter', 'map', 'flat_map', 'peek'))


class Stage(NamedTuple):
    kind: str
    args: Tuple[Any, ...] = ()

    @property
    def is_barrier(self) -> bool:
        return self.kind not in STATELESS_STAGES


def evaluate(iterable: IterableType[Any], stages: IterableType[Stage]) -> IteratorType[Any]:
    """
    Chains the generator of every stage onto `iterable`, in declaration order.
    Nothing is pulled until the returned iterator is.
    """
    iterable = iter(iterable)
    for stage in stages:
        iterable = stage_fns[stage.kind](iterable, *stage.args)
    return iterable


def _threading_pool(n_cpus: int):
    return multiprocessing.dummy.Pool(n_cpus)


def _multiprocessing_pool(n_cpus: int):
    return multiprocessing.Pool(n_cpus, _init_worker)


def _pathos_pool(n_cpus: int):
    from multiprocess.pool import Pool

    return Pool(n_cpus, _init_worker)


mp_backends = {
    'multiprocessing': _multiprocessing_pool,
    'pathos': _pathos_pool,
    'threading': _threading_pool,
}


class ParallelConfig(NamedTuple):
    n_cpus: int
    mp_backend: str
    partitions: int


def partition(items: List[T], n: int) -> List[List[T]]:
    """
    Splits `items` into at most `n` contiguous, near-equal chunks. Always returns at least one chunk.
    """
    n = max(1, min(n, len(items)))
    size, extra = divmod(len(items), n)
    chunks = []
    start = 0
    for index in range(n):
        end = start + size + (1 if index < extra else 0)
        chunks.append(items[start:end])
        start = end
    return chunks


def _run_partition(task: Tuple[int, list, Tuple[Stage, ...], Callable]) -> Tuple[int, Any]:
    index, chunk, stages, fold = task
    return index, fold(evaluate(chunk, stages))


def combine_adjacent(partials: IterableType[Tuple[int, Any]], combiner: Callable[[Any, Any], Any]) -> Any:
    """
    Merges indexed partial results as they arrive. Only neighbouring ranges are ever merged,
    so the combiner needs to be associative but not commutative.

    :param partials: (partition index, partial result) pairs in any order
    :param combiner: combiner(left, right) -> merged
    :return: The merge of all partials
    """
    by_start: Dict[int, Tuple[int, Any]] = {}
    by_end: Dict[int, int] = {}
    for index, value in partials:
        start, end = index, index + 1
        if start in by_end:
            left = by_end.pop(start)
            _, left_value = by_start.pop(left)
            logger.debug('combining partitions [%d, %d) and [%d, %d)', left, start, start, end)
            value = combiner(left_value, value)
            start = left
        if end in by_start:
            right_end, right_value = by_start.pop(end)
            del by_end[right_end]
            logger.debug('combining partitions [%d, %d) and [%d, %d)', start, end, end, right_end)
            value = combiner(value, right_value)
            end = right_end
        by_start[start] = (end, value)
        by_end[end] = start

    assert len(by_start) == 1, f'partitions left unmerged: {sorted(by_start)}'
    (_, value), = by_start.values()
    return value


def _split_at_barrier(stages: List[Stage]) -> Tuple[Tuple[Stage, ...], Optional[Stage], List[Stage]]:
    for position, stage in enumerate(stages):
        if stage.is_barrier:
            return tuple(stages[:position]), stage, stages[position + 1:]
    return tuple(stages), None, []


def _base_parallel(pool, items: List[Any], stages: List[Stage], fold: Callable, combiner: Callable,
                   n_partitions: int) -> Any:
    while True:
        head, barrier, stages = _split_at_barrier(stages)
        chunks = partition(items, n_partitions)
        logger.debug('evaluating %d items in %d partitions, %d stages before %s',
                     len(items), len(chunks), len(head), barrier.kind if barrier else 'terminal')

        if barrier is None:
            tasks = [(index, chunk, head, fold) for index, chunk in enumerate(chunks)]
            return combine_adjacent(pool.imap_unordered(_run_partition, tasks), combiner)

        if barrier.kind == 'sorted':
            # Every worker sorts its own partition; the sorted runs are merged here
            finish = functools.partial(_sorted_list, *barrier.args)
            tasks = [(index, chunk, head, finish) for index, chunk in enumerate(chunks)]
            runs = dict(pool.imap_unordered(_run_partition, tasks))
            key, reverse, comparator = barrier.args
            items = list(heapq.merge(*(runs[index] for index in range(len(chunks))),
                                     key=_sort_key(key, comparator), reverse=reverse))
            logger.debug('merged %d sorted partitions', len(chunks))
        else:
            tasks = [(index, chunk, head, list) for index, chunk in enumerate(chunks)]
            runs = dict(pool.imap_unordered(_run_partition, tasks))
            flattened = itertools.chain.from_iterable(runs[index] for index in range(len(chunks)))
            items = list(evaluate(flattened, (barrier,)))


def parallel_fn(items: List[Any], stages: List[Stage], fold: Callable, combiner: Callable,
                config: ParallelConfig) -> Any:
    pool = mp_backends[config.mp_backend](config.n_cpus)
    try:
        result = _base_parallel(pool, items, stages, fold, combiner, config.partitions)
        pool.close()
    except (KeyboardInterrupt, Exception) as e:
        pool.terminate()
        raise e
    finally:
        pool.join()

    return result


def _fold(accumulator: Callable, identity: Any, iterable: IterableType[Any]) -> Any:
    return functools.reduce(accumulator, iterable, identity)


def _fold_option(accumulator: Callable, iterable: IterableType[Any]) -> Option:
    iterable = iter(iterable)
    first = next(iterable, _MISSING)
    if first is _MISSING:
        return _EMPTY
    return Option(functools.reduce(accumulator, iterable, first))


def _combine_options(accumulator: Callable, left: Option, right: Option) -> Option:
    if left.is_empty():
        return right
    if right.is_empty():
        return left
    return Option(accumulator(left.get(), right.get()))


def _collect(collector: Collector, iterable: IterableType[Any]) -> Any:
    container = collector.supplier()
    for item in iterable:
        collector.accumulator(container, item)
    return container


def _first(iterable: IterableType[Any]) -> Option:
    return Option(next(iter(iterable), _MISSING))


def _nullable(found: Option) -> Option:
    # A None element still ends the search, but is reported as no value
    return Option.of_nullable(found.or_else(None))


def _first_present(left: Option, right: Option) -> Option:
    return left if left.is_present() else right


def _any_match(pred: Callable, iterable: IterableType[Any]) -> bool:
    return any(pred(item) for item in iterable)


def _all_match(pred: Callable, iterable: IterableType[Any]) -> bool:
    return all(pred(item) for item in iterable)


def _for_each(fn: Callable, iterable: IterableType[Any]) -> None:
    for item in iterable:
        fn(item)


def _ignore(left: Any, right: Any) -> None:
    return None


def _lesser(key: Optional[Callable], comparator: Optional[Callable], a: Any, b: Any) -> Any:
    sort_key = _sort_key(key, comparator) or _identity
    return b if sort_key(b) < sort_key(a) else a


def _greater(key: Optional[Callable], comparator: Optional[Callable], a: Any, b: Any) -> Any:
    sort_key = _sort_key(key, comparator) or _identity
    return b if sort_key(b) > sort_key(a) else a


class Stream:
    """
    A lazy, single-use sequence pipeline.

    Intermediate operations only record a stage. Terminal operations evaluate the pipeline
    and may be invoked once per stream, unless the stream comes from `Stream.from_supplier`.
    """

    def __init__(self, iterable_or_list: Union[IterableType[Any], List[Any]] = (),
                 factory: Optional[Callable[[], IterableType[Any]]] = None):
        self._base_iter = iterable_or_list
        self._factory = factory
        self._history: List[Stage] = []
        self._parallel: Optional[ParallelConfig] = None
        self._used = False

    @classmethod
    def of(cls, *items: Any) -> 'Stream':
        return cls(items)

    @classmethod
    def range(cls, start: int, stop: Optional[int] = None, step: int = 1) -> 'Stream':
        """
        Same arguments as the builtin `range`, the stop bound is exclusive
        """
        if stop is None:
            start, stop = 0, start
        return cls(range(start, stop, step))

    @classmethod
    def empty(cls) -> 'Stream':
        return cls(())

    @classmethod
    def iterate(cls, seed: T, fn: Callable[[T], T]) -> 'Stream':
        """
        An infinite stream of seed, fn(seed), fn(fn(seed)), ...
        Only usable sequentially with a short-circuiting stage or terminal operation.
        """
        def generate():
            value = seed
            while True:
                yield value
                value = fn(value)

        return cls(generate())

    @classmethod
    def from_supplier(cls, factory: Callable[[], IterableType[Any]]) -> 'Stream':
        """
        Creates a reusable stream. Every terminal operation calls `factory` for a fresh source,
        so the stream and everything derived from it may be evaluated any number of times.

        :param factory: Returns a new iterable on every call
        """
        return cls(factory=factory)

    @property
    def is_parallel(self) -> bool:
        return self._parallel is not None

    @property
    def is_reusable(self) -> bool:
        return self._factory is not None

    def _use(self) -> None:
        if self._factory is not None:
            return
        if self._used:
            raise ReuseError()
        self._used = True

    def _get_base_iterator(self) -> IteratorType[Any]:
        if self._factory is not None:
            return iter(self._factory())

        if isinstance(self._base_iter, Iterator):
            return self._base_iter

        return iter(self._base_iter)

    def _derive(self, history: List[Stage], parallel: Optional[ParallelConfig]) -> 'Stream':
        self._use()
        new_stream = Stream(self._base_iter, self._factory)
        new_stream._history = history
        new_stream._parallel = parallel
        return new_stream

    def _with_stage(self, kind: str, *args: Any) -> 'Stream':
        return self._derive([*self._history, Stage(kind, args)], self._parallel)

    def filter(self, fn: Callable[[T], bool]) -> 'Stream':
        """
        Given a predicate, filters the stream

        :param fn: A function that takes the item and returns a boolean
        """
        return self._with_stage('filter', fn)

    def map(self, fn: Callable[[T], U]) -> 'Stream':
        """
        Performs a standard map

        :param fn: The function to map over the stream
        """
        return self._with_stage('map', fn)

    def flat_map(self, fn: Callable[[T], IterableType[U]]) -> 'Stream':
        """
        Maps every item to an iterable and flattens the results by one level, keeping their order

        :param fn: A function that takes the item and returns an iterable
        """
        return self._with_stage('flat_map', fn)

    def peek(self, fn: Callable[[T], Any]) -> 'Stream':
        """
        Calls `fn` on every item as it flows past, leaving the item unchanged
        """
        return self._with_stage('peek', fn)

    def sorted(self, key: Optional[Callable[[T], Any]] = None, reverse: bool = False,
               comparator: Optional[Callable[[T, T], int]] = None) -> 'Stream':
        """
        Sorts the stream. The sort is stable, and it consumes the whole upstream before
        the first item is emitted.

        :param key: Same as the `key` of the builtin `sorted`, natural ordering by default
        :param reverse: Sorts descending
        :param comparator: A function (a, b) -> int, negative when a comes first. Overrides `key`
        """
        return self._with_stage('sorted', key, reverse, comparator)

    def distinct(self) -> 'Stream':
        return self._with_stage('distinct')

    def take(self, n: int) -> 'Stream':
        """
        Takes n items from the stream

        :param n: The number of items
        :return: Returns a new instance of 'Stream' with at most n items
        """
        if n < 0:
            raise ValueError(f'take() needs a non-negative count, got {n}')
        return self._with_stage('take', n)

    def drop(self, n: int) -> 'Stream':
        """
        Ignores n items in the stream

        :param n: The number of items
        :return: A new instance of 'Stream' with n items skipped
        """
        if n < 0:
            raise ValueError(f'drop() needs a non-negative count, got {n}')
        return self._with_stage('drop', n)

    def parallel(self, n_cpus: int = -1, mp_backend: str = 'threading', partitions: Optional[int] = None,
                 reserved: int = 0) -> 'Stream':
        """
        Evaluates the stream on a worker pool, using one of 3 backends:
            ``threading``: Python threads, side effects on shared objects are visible to the caller

            ``multiprocessing``: The default Python multiprocessing pool, every function must be picklable

            ``pathos``: Uses Pathos multiprocesses, which allows lambda functions

        The source is materialized and split into contiguous partitions. Stateless stages run per
        partition; terminal results are combined partition by partition.

        :param n_cpus: Number of workers. Defaults to `cpu_count() - reserved`
        :param mp_backend: The pool backend
        :param partitions: Number of partitions. Defaults to the number of workers
        :param reserved: Workers to leave free when `n_cpus` is not given
        :return: A parallel instance of 'Stream'
        """
        assert mp_backend in mp_backends, f'mp_backend "{mp_backend}" not in {list(mp_backends)}'

        n_cpus = max(1, multiprocessing.cpu_count() - reserved) if n_cpus < 0 else n_cpus
        config = ParallelConfig(n_cpus, mp_backend, partitions or n_cpus)

        return self._derive(list(self._history), config)

    def sequential(self) -> 'Stream':
        return self._derive(list(self._history), None)

    def _terminal(self, fold: Callable[[IterableType[Any]], Any], combiner: Callable[[Any, Any], Any]) -> Any:
        self._use()

        if self._parallel is None:
            return fold(evaluate(self._get_base_iterator(), self._history))

        items = list(self._get_base_iterator())
        return parallel_fn(items, list(self._history), fold, combiner, self._parallel)

    def __iter__(self):
        """
        Evaluates the stream, lazily when sequential

        :return: The iterator for the computed stream
        """
        if self._parallel is None:
            self._use()
            return evaluate(self._get_base_iterator(), self._history)

        return iter(self.to_list())

    def reduce(self, accumulator: Callable[[U, T], U], identity: Any = _MISSING,
               combiner: Optional[Callable[[U, U], U]] = None) -> Any:
        """
        Performs a left-to-right fold on the stream.
        In parallel mode each partition is folded from `identity`, and the partial results are merged
        with `combiner`, so `identity` must be a true identity and `combiner` associative.

        :param accumulator: The reduction function accumulator(acc: U, item: T) -> U
        :param identity: The initial accumulator. If not given, the first item is used and an Option is returned
        :param combiner: Merges two partial results. Defaults to `accumulator`
        :return: The result of reduction, or an Option when there is no identity
        """
        if identity is _MISSING:
            return _nullable(self._terminal(functools.partial(_fold_option, accumulator),
                                            functools.partial(_combine_options, accumulator)))

        return self._terminal(functools.partial(_fold, accumulator, identity), combiner or accumulator)

    def collect(self, collector: Collector) -> Any:
        """
        Performs a mutable reduction with a Collector.
        In parallel mode every partition gets its own container from `collector.supplier`.
        """
        container = self._terminal(functools.partial(_collect, collector), collector.combiner)
        return collector.finisher(container)

    def to_list(self) -> List[Any]:
        return self.collect(to_list())

    def to_set(self) -> set:
        return self.collect(to_set())

    def count(self) -> int:
        return self.collect(counting())

    def sum(self) -> Any:
        return self.reduce(operator.add, 0)

    def average(self, fn: Optional[Callable[[T], Any]] = None) -> Option:
        stats = self.collect(summarizing(fn or _identity))
        return Option(stats.average) if stats.count else _EMPTY

    def min(self, key: Optional[Callable[[T], Any]] = None,
            comparator: Optional[Callable[[T, T], int]] = None) -> Option:
        """
        :return: The smallest item, the first one among equals, as an Option
        """
        return self.reduce(functools.partial(_lesser, key, comparator))

    def max(self, key: Optional[Callable[[T], Any]] = None,
            comparator: Optional[Callable[[T, T], int]] = None) -> Option:
        """
        :return: The largest item, the first one among equals, as an Option
        """
        return self.reduce(functools.partial(_greater, key, comparator))

    def find_first(self) -> Option:
        """
        :return: The first item in encounter order as an Option, empty for an empty stream
        """
        return _nullable(self._terminal(_first, _first_present))

    def find_any(self) -> Option:
        return self.find_first()

    def any_match(self, pred: Callable[[T], bool]) -> bool:
        return self._terminal(functools.partial(_any_match, pred), operator.or_)

    def all_match(self, pred: Callable[[T], bool]) -> bool:
        return self._terminal(functools.partial(_all_match, pred), operator.and_)

    def none_match(self, pred: Callable[[T], bool]) -> bool:
        return not self.any_match(pred)

    def for_each(self, fn: Callable[[T], Any]) -> None:
        """
        Calls `fn` on every item. In parallel mode the call order is not defined.
        """
        self._terminal(functools.partial(_for_each, fn), _ignore)

    def for_each_ordered(self, fn: Callable[[T], Any]) -> None:
        """
        Calls `fn` on every item in encounter order, in parallel mode as well
        """
        for item in self.to_list():
            fn(item)

    def group_by(self, key_fn: Callable[[T], K]) -> Dict[K, List[T]]:
        return self.collect(grouping_by(key_fn))

    def to_map(self, key_fn: Callable[[T], K], value_fn: Optional[Callable[[T], U]] = None,
               merge_fn: Optional[Callable[[U, U], U]] = None) -> Dict[K, U]:
        return self.collect(to_map(key_fn, value_fn, merge_fn))

    def joining(self, delimiter: str = '', prefix: str = '', suffix: str = '') -> str:
        return self.collect(joining(delimiter, prefix, suffix))


def _trace(label: str, fn: Callable[[T], U]) -> Callable[[T], U]:
    def traced(*args):
        print(f'{label}: {"; ".join(map(str, args))} [{threading.current_thread().name}]')
        return fn(*args)

    return traced


if __name__ == '__main__':
    Stream.of('d2', 'a2', 'b1', 'b3', 'c')\
        .filter(_trace('filter', lambda s: s.startswith('a')))\
        .sorted(comparator=_trace('sort', lambda a, b: (a > b) - (a < b)))\
        .map(_trace('map', str.upper))\
        .for_each(_trace('forEach', lambda s: None))

    print(Stream.of('a1', 'a2', 'b1', 'c2', 'c1')
          .parallel(n_cpus=3)
          .filter(_trace('filter', lambda s: True))
          .map(_trace('map', str.upper))
          .sorted(comparator=_trace('sort', lambda a, b: (a > b) - (a < b)))
          .to_list())

    print(Stream.of(18, 23, 23, 12)
          .parallel(n_cpus=3)
          .reduce(_trace('accumulator', operator.add), 0, _trace('combiner', operator.add)))
