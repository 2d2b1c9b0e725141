# queuekit

queuekit puts producers and consumers for three message brokers behind one
small interface:

- **beanstalkd**: delayed jobs written to several servers at once. A built-in
  client speaks the beanstalkd text protocol. Redis keeps a guard key so that
  each job is handled only once.
- **Kafka**: a pusher that writes at once or in batches, and a consumer group
  that shares messages out to worker threads. Messages with the same key keep
  their order.
- **Pulsar**: a pusher that writes at once or in batches, and a consumer on a
  shared subscription.

## What the package does not do

queuekit has no network client for Kafka or Pulsar. For those two backends
you supply the functions that reach the broker:

- the Kafka pusher takes a `send(topic, partition, messages)` callable;
- the Kafka consumer takes a reader factory that builds a `Reader` from
  `fetch` and `commit` callables;
- the Pulsar pusher takes a `connect` callable that returns a client;
- the Pulsar consumer takes a client object.

queuekit handles the batching, partitioning, ordering, commits and metrics
around those functions. The package has no command-line program and no
configuration-file loader.

## Installation

```
pip install queuekit
```

The only dependency is `redis`, which the beanstalkd consumer uses to drop
jobs it has already handled.

## The common interface

`queuekit.queue` holds the shared types:

- `Consumer`: has `consume(key, value)`. It raises an exception to signal
  that a message was not handled.
- `ConsumeHandle`: wraps a plain `(key, value)` function as a `Consumer`.
- `Pusher`: has `push(key, body, **kwargs)`, `name()` and `close()`. It can
  be used as a context manager.
- `NotSupportedError`: raised when a push is given an option the pusher does
  not take.

`queuekit.stats.Metrics` counts handled and dropped tasks:

- `add(Task(duration=...))` records a handled task;
- `add_drop()` records a dropped one;
- `tasks`, `drops`, `total_duration`, `max_duration` and `average_duration`
  read the counts back.

`queuekit.batching.ChunkExecutor(execute, chunk_bytes=..., flush_interval=...)`
buffers tasks and calls `execute` with a batch in two cases: when the buffered
size reaches `chunk_bytes`, or when `flush_interval` seconds pass with nothing
sent. Its methods:

- `add(task, size)` buffers a task;
- `flush()` runs what is buffered in the calling thread, and returns `False`
  if nothing was buffered;
- `wait()` blocks until every batch handed over so far has finished.

## beanstalkd

```python
from datetime import datetime, timedelta
from queuekit.beanstalkd.connection import BeanstalkdConf
from queuekit.beanstalkd.producer import ProducerCluster

producer = ProducerCluster(BeanstalkdConf(
    endpoints=["localhost:11300", "127.0.0.1:11300"], tube="tube"))

ids = producer.delay(b"hello", timedelta(seconds=5))
ids = producer.at(b"hello", datetime.now() + timedelta(minutes=1))
ids = producer.push(None, b"hello", duration=timedelta(seconds=5))
producer.revoke(ids)
producer.close()
```

`ProducerCluster` checks its endpoints when it is built. It raises
`ValueError` if there are fewer than two, or if two are the same.

Each job is written to up to three randomly chosen servers. The call returns
the job ids joined with commas, in the form `endpoint/tube/id`. A write
succeeds only if at least two servers accepted the job. If fewer did, the
copies that were written are revoked and the error is raised.

Each job body is prefixed with its due time in Unix nanoseconds and a `/`
(see `wrap`). `push` requires either `at=` or `duration=`. Any other keyword
raises `NotSupportedError`.

`queuekit.beanstalkd.producernode.ProducerNode` talks to a single server. It
raises `TimeBeforeNowError` for a due time in the past.

To consume, use `queuekit.beanstalkd.consumer.ConsumerCluster`:

```python
from queuekit.beanstalkd.connection import Conf
from queuekit.beanstalkd.consumer import ConsumerCluster, with_handle

cluster = ConsumerCluster(
    Conf(endpoints=["localhost:11300"], tube="tube",
         redis_url="redis://localhost:6379/0"),
    with_handle(lambda body: print(body)),
)
cluster.start()   # blocks; call cluster.stop() from another thread
```

`ConsumerCluster` runs one `ConsumerNode` per server. Each node reserves a
job and deletes it before handing it on. A job is discarded in these cases:

- its time prefix cannot be read (`unwrap` returns `None`);
- its due time is more than thirty minutes in the past;
- its MD5 guard key is already set in Redis, where keys are kept for one hour.

## Kafka

`queuekit.kafka.config.Conf` holds the consumer settings: brokers, group,
topic, offset `"first"` or `"last"`, conns, consumers, processors, byte
limits and credentials. `RequiredAcks` holds the acknowledgement levels.

Create a pusher with a send function:

```python
from queuekit.kafka.pusher import Pusher

def send(topic, partition, messages):
    ...  # hand the batch to your Kafka client

pusher = Pusher(["127.0.0.1:9092"], "kafka", send=send, partitions=[0, 1, 2])
pusher.push(b"key", b"value", sync=True)   # write now, raise on failure
pusher.push(b"key", b"value")              # queue for the next batch
pusher.stop()                              # flush the batch and close
```

The `Writer` places each message on a partition using a balancer. The default
balancer picks the partition that has been given the fewest bytes. The writer
sends at most `batch_size` messages or `batch_bytes` bytes per call.
`queuekit.kafka.balancer.XXHashBalancer` chooses a partition from the
`xxhash64` of the message key, and uses `RoundRobin` for messages without a
key.

In `queuekit.kafka.message`:

- headers set with `headers_context(...)` are attached to messages pushed
  inside that block;
- `Headers` reads and writes a message's headers by name.

To consume, use `queuekit.kafka.consumer.new_queue(conf, handler,
reader_factory, ...)`. The factory receives a `ReaderConfig` and returns a
`Reader(config, fetch, commit)`:

- `fetch(max_wait)` returns a message or `None`;
- `commit(messages)` stores the offsets.

Commits are collected per partition and sent at most once every commit
interval, and once more when the reader is closed. Messages are spread over
`conf.processors` workers by the xxhash64 of their key. A message is
committed only after its handler returns without raising. Call `start()` on
the returned `Queues` to run it, and `stop()` to close the readers.

## Pulsar

`queuekit.pulsar.pusher.Pusher(addrs, topic, connect=...)` calls
`connect(url, connection_timeout=5.0, operation_timeout=5.0)`, where `url` is
`pulsar://` followed by the brokers. It then calls
`client.create_producer(topic)`.

```python
pusher.push(b"key", b"value", sync=True, deliver_after=timedelta(seconds=10))
pusher.push(b"key", b"value", ordering_key="orders")
pusher.close()   # sends what is buffered, then closes producer and client
```

A full `Message` may be passed with `message=`. The `deliver_at`,
`deliver_after` and `ordering_key` arguments override its fields.

`queuekit.pulsar.consumer.new_queue(conf, handler, client, ...)` builds
`conf.conns` queues. Each queue calls
`client.subscribe(topic, subscription_name, channel, subscription_type="shared")`.
The client puts received messages, which carry `key` and `payload`, on
`channel`. `conf.processors` workers hand them to the handler. Every message
is acknowledged, including those whose handler raised.

## Running the tests

```
pip install queuekit[test]
pytest
```