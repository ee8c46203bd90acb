from .webhook import (  # noqa: F401
    WebhookDailyCounter,
    WebhookDelivery,
    WebhookDeliveryAttempt,
    WebhookRegistration,
)
