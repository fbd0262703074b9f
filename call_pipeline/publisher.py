"""
Pub/Sub 発行モジュール (Publisher Module)

検証済みの Webhook 本体を Pub/Sub トピックへ発行します。
"""

from concurrent import futures
from typing import Optional

from google.api_core.exceptions import GoogleAPIError
from google.cloud import pubsub_v1

from .log import get_logger


class PublishError(Exception):
    """メッセージ発行に失敗した場合の例外"""
    pass


class PubSubPublisher:
    """
    単一トピックへメッセージを発行するクラス

    publish() は発行の確認（メッセージ ID の確定）まで待機します。
    """

    PUBLISH_TIMEOUT = 30

    def __init__(
        self,
        project_id: Optional[str],
        topic_name: str,
        client: Optional[pubsub_v1.PublisherClient] = None
    ):
        self.project_id = project_id
        self.topic_name = topic_name
        self._client = client
        self.logger = get_logger(__name__)

    @property
    def client(self) -> pubsub_v1.PublisherClient:
        if self._client is None:
            self._client = pubsub_v1.PublisherClient()
        return self._client

    @property
    def topic_path(self) -> str:
        return self.client.topic_path(self.project_id, self.topic_name)

    def publish(self, data: bytes) -> str:
        """
        メッセージを発行

        Args:
            data: メッセージ本体（JSON シリアライズ済みの Webhook）

        Returns:
            発行されたメッセージ ID

        Raises:
            PublishError: 発行に失敗した場合
        """
        try:
            future = self.client.publish(self.topic_path, data)
            message_id = future.result(timeout=self.PUBLISH_TIMEOUT)
        except (GoogleAPIError, futures.TimeoutError) as e:
            self.logger.error(
                "pubsub_publish_failed",
                topic=self.topic_name,
                error_type=type(e).__name__,
                error=str(e)
            )
            raise PublishError(f"Failed to publish message to {self.topic_name}: {e}") from e

        self.logger.info(
            "pubsub_message_published",
            topic=self.topic_name,
            message_id=message_id
        )
        return message_id
