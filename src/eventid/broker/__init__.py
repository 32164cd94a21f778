"""Partitioned event log (Redis Streams) and publisher."""

from eventid.broker.log import EventPublisher, LogMessage, PartitionedLog, partition_for
from eventid.broker.redis_streams import RedisStreamLog

__all__ = ["EventPublisher", "LogMessage", "PartitionedLog", "RedisStreamLog", "partition_for"]
