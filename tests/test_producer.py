import threading
from datetime import datetime, timedelta, timezone

import pytest

from queuekit.beanstalkd.connection import ID_SEP, BeanstalkdConf, BeanstalkError
from queuekit.beanstalkd.consumer import unwrap
from queuekit.beanstalkd.producer import REPLICA_NODES, ProducerCluster, wrap
from queuekit.beanstalkd.producernode import DelayPusher, ProducerNode
from queuekit.queue import NotSupportedError


class FakeNode(DelayPusher):
    def __init__(self, endpoint, tube, fail=False, revoke_error=None, close_error=None):
        self.endpoint = endpoint
        self.tube = tube
        self.fail = fail
        self.revoke_error = revoke_error
        self.close_error = close_error
        self.calls = []
        self.revoked = []
        self.closed = False
        self._lock = threading.Lock()

    def _job_id(self):
        return f"{self.endpoint}/{self.tube}/1"

    def at(self, body, at):
        with self._lock:
            self.calls.append(("at", body, at))
        if self.fail:
            raise BeanstalkError("JOB_TOO_BIG")
        return self._job_id()

    def delay(self, body, delay):
        with self._lock:
            self.calls.append(("delay", body, delay))
        if self.fail:
            raise BeanstalkError("JOB_TOO_BIG")
        return self._job_id()

    def revoke(self, ids):
        with self._lock:
            self.revoked.append(ids)
        if self.revoke_error is not None:
            raise self.revoke_error

    def close(self):
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


def make_cluster(endpoints, **node_options):
    created = {}

    def factory(endpoint, tube):
        node = FakeNode(endpoint, tube, **node_options.get(endpoint, {}))
        created[endpoint] = node
        return node

    cluster = ProducerCluster(BeanstalkdConf(endpoints=endpoints, tube="jobs"), node_factory=factory)
    return cluster, created


def future(seconds=60):
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


def test_wrap_of_epoch_starts_with_zero_stamp():
    epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert wrap(b"x", epoch) == b"0/x"


def test_wrap_round_trips_through_unwrap():
    at = future()
    assert unwrap(wrap(b"payload", at), now=at) == b"payload"


def test_requires_at_least_two_endpoints():
    with pytest.raises(ValueError, match="greater than"):
        ProducerCluster(BeanstalkdConf(endpoints=["a:1"], tube="jobs"), node_factory=FakeNode)


def test_rejects_duplicate_endpoints():
    with pytest.raises(ValueError, match="different"):
        ProducerCluster(BeanstalkdConf(endpoints=["a:1", "a:1"], tube="jobs"), node_factory=FakeNode)


def test_name_is_the_tube():
    cluster, _ = make_cluster(["a:1", "b:1"])
    assert cluster.name() == "jobs"


def test_at_writes_to_every_node_and_joins_ids():
    cluster, nodes = make_cluster(["a:1", "b:1"])
    at = future()
    ids = cluster.at(b"hello", at)
    assert ids == ID_SEP.join(["a:1/jobs/1", "b:1/jobs/1"])
    for node in nodes.values():
        [(kind, body, when)] = node.calls
        assert kind == "at"
        assert when == at
        assert body == wrap(b"hello", at)


def test_at_uses_at_most_three_nodes():
    endpoints = [f"n{i}:1" for i in range(5)]
    cluster, nodes = make_cluster(endpoints)
    ids = cluster.at(b"x", future())
    written = [node for node in nodes.values() if node.calls]
    assert len(written) == REPLICA_NODES
    assert len(ids.split(ID_SEP)) == REPLICA_NODES


def test_too_few_successes_revokes_and_raises():
    cluster, nodes = make_cluster(["a:1", "b:1"], **{"b:1": {"fail": True}})
    with pytest.raises(BeanstalkError) as excinfo:
        cluster.at(b"x", future())
    assert excinfo.value.status == "JOB_TOO_BIG"
    assert nodes["a:1"].revoked == ["a:1/jobs/1"]
    assert nodes["b:1"].revoked == ["a:1/jobs/1"]


def test_two_successes_out_of_three_are_enough():
    cluster, nodes = make_cluster(["a:1", "b:1", "c:1"], **{"c:1": {"fail": True}})
    ids = cluster.at(b"x", future())
    assert ids.split(ID_SEP) == ["a:1/jobs/1", "b:1/jobs/1"]
    assert all(node.revoked == [] for node in nodes.values())


def test_delay_passes_delay_and_stamps_body():
    cluster, nodes = make_cluster(["a:1", "b:1"])
    delay = timedelta(seconds=5)
    cluster.delay(b"later", delay)
    for node in nodes.values():
        [(kind, body, value)] = node.calls
        assert kind == "delay"
        assert value == delay
        assert unwrap(body) == b"later"


def test_push_requires_a_time():
    cluster, _ = make_cluster(["a:1", "b:1"])
    with pytest.raises(ValueError, match="expiration"):
        cluster.push(None, b"x")


def test_push_rejects_unknown_option():
    cluster, _ = make_cluster(["a:1", "b:1"])
    with pytest.raises(NotSupportedError):
        cluster.push(None, b"x", sync=True)


def test_push_with_at_schedules_at_that_time():
    cluster, nodes = make_cluster(["a:1", "b:1"])
    at = future()
    cluster.push(None, b"x", at=at)
    assert [call[2] for call in nodes["a:1"].calls] == [at]


def test_push_with_duration_schedules_in_the_future():
    cluster, nodes = make_cluster(["a:1", "b:1"])
    before = datetime.now(timezone.utc)
    cluster.push(None, b"soon", duration=timedelta(seconds=5))
    [(_, body, at)] = nodes["a:1"].calls
    assert before + timedelta(seconds=5) <= at <= datetime.now(timezone.utc) + timedelta(seconds=5)
    assert unwrap(body) == b"soon"


def test_revoke_raises_single_error_as_is():
    error = BeanstalkError("NOT_FOUND")
    cluster, nodes = make_cluster(["a:1", "b:1"], **{"a:1": {"revoke_error": error}})
    with pytest.raises(BeanstalkError) as excinfo:
        cluster.revoke("a:1/jobs/1")
    assert excinfo.value is error
    assert nodes["b:1"].revoked == ["a:1/jobs/1"]


def test_revoke_collects_several_errors():
    cluster, nodes = make_cluster(
        ["a:1", "b:1"],
        **{
            "a:1": {"revoke_error": BeanstalkError("NOT_FOUND")},
            "b:1": {"revoke_error": BeanstalkError("INTERNAL_ERROR")},
        },
    )
    collected = []
    try:
        cluster.revoke("a:1/jobs/1,b:1/jobs/1")
    except Exception as error:
        collected = list(getattr(error, "errors", []))
    assert sorted(error.status for error in collected) == ["INTERNAL_ERROR", "NOT_FOUND"]
    assert nodes["a:1"].revoked == ["a:1/jobs/1,b:1/jobs/1"]
    assert nodes["b:1"].revoked == ["a:1/jobs/1,b:1/jobs/1"]


def test_close_closes_every_node_and_reports_errors():
    error = OSError("broken")
    cluster, nodes = make_cluster(["a:1", "b:1"], **{"a:1": {"close_error": error}})
    with pytest.raises(OSError) as excinfo:
        cluster.close()
    assert excinfo.value is error
    assert all(node.closed for node in nodes.values())


class FakeClient:
    def __init__(self):
        self.puts = []
        self.deleted = []

    def use(self, tube):
        self.tube = tube

    def put(self, body, priority, delay, ttr):
        self.puts.append(body)
        return len(self.puts)

    def delete(self, job_id):
        self.deleted.append(job_id)

    def close(self):
        pass


def test_cluster_over_real_nodes_returns_endpoint_tube_ids():
    clients = {"a:1": FakeClient(), "b:1": FakeClient()}

    def factory(endpoint, tube):
        return ProducerNode(endpoint, tube, dial=lambda e: clients[e])

    cluster = ProducerCluster(BeanstalkdConf(endpoints=["a:1", "b:1"], tube="jobs"), node_factory=factory)
    ids = cluster.delay(b"x", timedelta(seconds=1))
    assert ids == ID_SEP.join(["a:1/jobs/1", "b:1/jobs/1"])
    cluster.revoke(ids)
    assert clients["a:1"].deleted == [1]
    assert clients["b:1"].deleted == [1]