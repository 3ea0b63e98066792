"""Communication infrastructure adapters.

- TelegramSender / TelegramPoller: Bot API delivery and long polling
- OnDemandIntentResolver: natural-language intent resolution over HTTP
"""

from chatgate.infrastructure.communication.on_demand import OnDemandIntentResolver
from chatgate.infrastructure.communication.telegram import TelegramPoller, TelegramSender

__all__ = ["OnDemandIntentResolver", "TelegramPoller", "TelegramSender"]
