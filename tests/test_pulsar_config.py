from queuekit.pulsar.config import Conf


def test_url_joins_brokers():
    conf = Conf(brokers=["a:6650", "b:6650"], topic="t")
    assert conf.url() == "pulsar://a:6650,b:6650"


def test_url_single_broker():
    conf = Conf(brokers=["localhost:6650"])
    assert conf.url() == "pulsar://localhost:6650"


def test_defaults_and_independent_broker_lists():
    first = Conf()
    second = Conf()
    first.brokers.append("x:1")
    assert second.brokers == []
    assert (first.conns, first.processors) == (1, 8)
    assert second.url() == "pulsar://"