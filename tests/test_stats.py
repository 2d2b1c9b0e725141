import threading

from queuekit.stats import Metrics, Task


def test_add_counts_tasks_and_durations():
    metrics = Metrics("test")
    durations = [0.25, 1.5, 0.75]
    for duration in durations:
        metrics.add(Task(duration=duration))
    assert metrics.tasks == len(durations)
    assert metrics.drops == 0
    assert metrics.total_duration == sum(durations)
    assert metrics.max_duration == max(durations)


def test_average_is_total_over_tasks():
    metrics = Metrics("avg")
    metrics.add(Task(duration=2.0))
    metrics.add(Task(duration=4.0))
    assert metrics.average_duration == metrics.total_duration / metrics.tasks


def test_average_without_tasks_is_zero():
    assert Metrics("empty").average_duration == 0.0


def test_drops_are_counted_separately():
    metrics = Metrics("drops")
    metrics.add_drop()
    metrics.add(Task(duration=9.0, drop=True))
    metrics.add(Task(duration=1.0))
    assert metrics.drops == 2
    assert metrics.tasks == 1
    assert metrics.max_duration == 1.0


def test_concurrent_adds_are_not_lost():
    metrics = Metrics("concurrent")

    def work():
        for _ in range(500):
            metrics.add(Task(duration=0.0))
            metrics.add_drop()

    threads = [threading.Thread(target=work) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert metrics.tasks == 4 * 500
    assert metrics.drops == 4 * 500


def test_name_is_kept():
    assert Metrics("kafka-consumer").name == "kafka-consumer"