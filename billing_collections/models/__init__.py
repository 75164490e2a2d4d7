from billing_collections.models.billing_event import BillingEvent  # noqa: F401
from billing_collections.models.collections import (  # noqa: F401
    OPEN_FALLBACK_STATUSES,
    AdjustmentMode,
    AttemptChannel,
    AttemptStatus,
    BillingAdjustment,
    BillingAttempt,
    BillingCharge,
    BillingCycle,
    BillingMandate,
    BillingPaymentMethod,
    BillingSubscription,
    ChargeStatus,
    CycleStatus,
    FallbackIntent,
    FallbackIntentStatus,
    FallbackProvider,
    FiscalDocument,
    FiscalDocumentStatus,
    FxRate,
    MandateStatus,
    PaymentChannel,
    PaymentMethodStatus,
    PaymentMethodType,
    ReconciliationStatus,
    SubscriptionStatus,
)
from billing_collections.models.direct_debit import (  # noqa: F401
    BatchDirection,
    BatchItemStatus,
    BatchStatus,
    FileBatch,
    FileBatchItem,
)
from billing_collections.models.jobs import (  # noqa: F401
    BillingJobLock,
    BillingJobRun,
    BillingJobRunStatus,
    BillingJobSource,
)
from billing_collections.models.sequence import BillingSequence  # noqa: F401
