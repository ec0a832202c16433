"""Property-based tests for the pipeline evaluation model using Hypothesis."""

import operator

import pytest
from hypothesis import given, settings, HealthCheck, strategies as st

from lazistream import Stream, ReuseError, joining, partition


ints = st.lists(st.integers(min_value=-1000, max_value=1000), max_size=60)
words = st.lists(st.text(alphabet='abc', max_size=3), max_size=30)
pool_settings = settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.too_slow])


@given(items=ints)
def test_filter_keeps_matching_subsequence(items):
    assert Stream(items).filter(lambda n: n % 3 == 0).to_list() == [n for n in items if n % 3 == 0]


@given(pairs=st.lists(st.tuples(st.integers(min_value=0, max_value=5), st.integers()), max_size=40))
def test_sorted_is_a_stable_permutation(pairs):
    result = Stream(pairs).sorted(key=operator.itemgetter(0)).to_list()

    assert sorted(result) == sorted(pairs)
    assert all(a[0] <= b[0] for a, b in zip(result, result[1:]))
    assert result == sorted(pairs, key=operator.itemgetter(0))


@given(items=st.lists(st.floats(allow_nan=False, allow_infinity=False, width=32), max_size=40))
def test_sequential_reduce_is_deterministic(items):
    stream = Stream.from_supplier(lambda: items)

    assert stream.reduce(operator.add, 0.0) == stream.reduce(operator.add, 0.0)


@pool_settings
@given(items=ints, partitions=st.sampled_from([1, 2, 4, 8]))
def test_parallel_reduce_matches_sequential(items, partitions):
    expected = Stream(items).reduce(lambda acc, n: acc + n * n, 0, operator.add)

    result = Stream(items)\
        .parallel(n_cpus=2, partitions=partitions)\
        .reduce(lambda acc, n: acc + n * n, 0, operator.add)

    assert result == expected


@pool_settings
@given(items=words, partitions=st.sampled_from([1, 2, 4, 8]))
def test_parallel_concatenation_keeps_order(items, partitions):
    # string concatenation is associative but not commutative
    stream = Stream.from_supplier(lambda: items)

    assert stream.parallel(n_cpus=3, partitions=partitions).reduce(operator.add, '') == ''.join(items)
    assert stream.parallel(n_cpus=3, partitions=partitions).collect(joining('|')) == '|'.join(items)


@pool_settings
@given(items=ints, partitions=st.sampled_from([1, 2, 4, 8]))
def test_parallel_sorted_matches_sequential(items, partitions):
    stream = Stream.from_supplier(lambda: items).map(lambda n: n // 10)

    assert stream.parallel(n_cpus=2, partitions=partitions).sorted().to_list() == stream.sorted().to_list()


@given(items=ints, n=st.integers(min_value=1, max_value=10))
def test_partition_is_contiguous(items, n):
    chunks = partition(items, n)

    assert [item for chunk in chunks for item in chunk] == items
    assert 1 <= len(chunks) <= n
    assert max(map(len, chunks)) - min(map(len, chunks)) <= 1


@given(items=ints, calls=st.integers(min_value=2, max_value=5))
def test_reusable_stream_sees_full_source_every_time(items, calls):
    stream = Stream.from_supplier(lambda: iter(items)).map(abs)

    for _ in range(calls):
        assert stream.to_list() == [abs(n) for n in items]


@given(items=ints)
def test_single_use_stream_rejects_second_terminal(items):
    stream = Stream(items)
    stream.count()

    with pytest.raises(ReuseError):
        stream.count()
