# Models package: import all models here so Alembic can discover them.

from patronage.models.tier import Tier  # noqa: F401
from patronage.models.customer import ExternalCustomer  # noqa: F401
from patronage.models.subscription import Subscription  # noqa: F401
from patronage.models.processed_event import ProcessedEvent  # noqa: F401
from patronage.models.refund_intent import RefundIntent  # noqa: F401
from patronage.models.content import GatedContent  # noqa: F401
from patronage.models.audit import AuditEvent  # noqa: F401
