from logging_config import get_logger
from registry import Deliver
from schemas.messages import SignalMessage

logger = get_logger(__name__)


class SignalingRelay:
    """Forwards offer/answer/ICE messages to the connection named by ``to``.

    The relay keeps no state. The sender field is always replaced with the
    connection the message actually arrived on, and a message for a
    connection that is not live is dropped without telling the sender.
    """

    def __init__(self, deliver: Deliver):
        self.deliver = deliver

    async def forward(self, sender_id: str, message: SignalMessage) -> bool:
        if message.sender is not None and message.sender != sender_id:
            logger.warning(f"Connection {sender_id} sent {message.event} claiming to be {message.sender}, rewriting")
        outgoing = message.with_sender(sender_id)
        delivered = await self.deliver(message.to, outgoing)
        if delivered:
            logger.debug(f"Relayed {message.event} from {sender_id} to {message.to}")
        else:
            logger.debug(f"Dropped {message.event} from {sender_id}: {message.to} is not connected")
        return delivered
