"""Segment status publisher for pub/sub event publishing."""

import logging
from pubsub import pub
from ..models.session import TranscriptionSegment

logger = logging.getLogger(__name__)

SEGMENT_STATUS_TOPIC = "segment.status"


class SegmentPublisher:
    """Publishes persisted segment state changes using pubsub.pub.

    The presentation layer subscribes to the topic with a listener taking
    a single ``segment`` argument.
    """

    def __init__(self, topic: str = SEGMENT_STATUS_TOPIC):
        """Initialize segment publisher.

        Args:
            topic: Pub/sub topic name for segment status changes
        """
        self.topic = topic
        logger.info(f"SegmentPublisher initialized with topic: {topic}")

    def publish_segment(self, segment: TranscriptionSegment) -> None:
        """Publish a segment's current state to the pub/sub topic.

        Listener failures are logged, never raised into the pipeline.

        Args:
            segment: TranscriptionSegment to publish
        """
        try:
            pub.sendMessage(self.topic, segment=segment)
        except Exception as e:
            logger.error(f"Segment status listener failed for {segment.id}: {e}")
            return
        logger.debug(f"Published segment status: {segment.id} ({segment.status.value})")
