from datetime import datetime, timedelta, timezone

import pytest

from queuekit.beanstalkd.connection import DEFAULT_TIME_TO_RUN, PRI_NORMAL, BeanstalkError
from queuekit.beanstalkd.producernode import ProducerNode, TimeBeforeNowError


class FakeClient:
    def __init__(self, endpoint, fail=None):
        self.endpoint = endpoint
        self.tube = None
        self.puts = []
        self.deleted = []
        self.closed = False
        self.fail = fail

    def use(self, tube):
        self.tube = tube

    def put(self, body, priority, delay, ttr):
        if self.fail is not None:
            raise self.fail
        self.puts.append((body, priority, delay, ttr))
        return len(self.puts)

    def delete(self, job_id):
        self.deleted.append(job_id)

    def close(self):
        self.closed = True


@pytest.fixture
def dialled():
    return []


def make_node(dialled, fail=None, endpoint="host:11300", tube="tube"):
    def dial(address):
        client = FakeClient(address, fail)
        dialled.append(client)
        return client

    return ProducerNode(endpoint, tube, dial=dial)


def test_delay_returns_joint_id(dialled):
    node = make_node(dialled)
    job = node.delay(b"body", timedelta(seconds=5))
    assert job == "host:11300/tube/1"
    client = dialled[0]
    assert client.tube == "tube"
    assert client.puts == [(b"body", PRI_NORMAL, timedelta(seconds=5), DEFAULT_TIME_TO_RUN)]


def test_at_in_past_is_rejected(dialled):
    node = make_node(dialled)
    with pytest.raises(TimeBeforeNowError):
        node.at(b"x", datetime.now(timezone.utc) - timedelta(minutes=1))
    assert dialled == []


def test_at_in_future_uses_remaining_delay(dialled):
    node = make_node(dialled)
    node.at(b"x", datetime.now(timezone.utc) + timedelta(seconds=10))
    delay = dialled[0].puts[0][2]
    assert timedelta(seconds=9) < delay <= timedelta(seconds=10)


def test_at_accepts_naive_datetime(dialled):
    node = make_node(dialled)
    assert node.at(b"x", datetime.now() + timedelta(seconds=3)).endswith("/tube/1")


def test_fatal_error_resets_connection(dialled):
    node = make_node(dialled, fail=BeanstalkError("OUT_OF_MEMORY"))
    with pytest.raises(BeanstalkError):
        node.delay(b"x", timedelta(0))
    assert dialled[0].closed is True
    with pytest.raises(BeanstalkError):
        node.delay(b"x", timedelta(0))
    assert len(dialled) == 2


def test_recoverable_error_keeps_connection(dialled):
    node = make_node(dialled, fail=BeanstalkError("JOB_TOO_BIG"))
    for _ in range(2):
        with pytest.raises(BeanstalkError) as info:
            node.delay(b"x", timedelta(0))
        assert info.value.status == "JOB_TOO_BIG"
    assert len(dialled) == 1
    assert dialled[0].closed is False


def test_revoke_deletes_first_matching_job(dialled):
    node = make_node(dialled)
    node.revoke("other:1/tube/5,host:11300/other/6,short,host:11300/tube/7,host:11300/tube/8")
    assert dialled[0].deleted == [7]


def test_revoke_without_match_does_not_dial(dialled):
    node = make_node(dialled)
    node.revoke("other:1/tube/5")
    assert dialled == []


def test_revoke_bad_id_raises(dialled):
    node = make_node(dialled)
    with pytest.raises(ValueError):
        node.revoke("host:11300/tube/abc")


def test_close_closes_client(dialled):
    node = make_node(dialled)
    node.delay(b"x", timedelta(0))
    node.close()
    assert dialled[0].closed is True