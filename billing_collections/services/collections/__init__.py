"""Collections services package.

This package provides the agency billing collections engine:
- Anchor-date cycle, charge and attempt generation
- Direct-debit presentment batches and bank response imports
- Dunning escalation, fallback payment channels and settlement
- Fiscal document issuance for paid charges
- Scheduled jobs with run bookkeeping
"""

from billing_collections.services.collections.anchor import (
    AnchorScheduler,
    anchor_scheduler,
)
from billing_collections.services.collections.charges import (
    Charges,
    Cycles,
    charges,
    cycles,
)
from billing_collections.services.collections.direct_debit.batches import (
    DirectDebitBatches,
    direct_debit_batches,
)
from billing_collections.services.collections.dunning import DunningEngine, dunning
from billing_collections.services.collections.fiscal import (
    FiscalIssuanceBridge,
    fiscal_bridge,
)
from billing_collections.services.collections.fx import FxRateResolver, fx_rates
from billing_collections.services.collections.jobs import JobRuns, job_runs
from billing_collections.services.collections.mandates import Mandates, mandates

__all__ = [
    # Classes
    "AnchorScheduler",
    "Charges",
    "Cycles",
    "DirectDebitBatches",
    "DunningEngine",
    "FiscalIssuanceBridge",
    "FxRateResolver",
    "JobRuns",
    "Mandates",
    # Service instances
    "anchor_scheduler",
    "charges",
    "cycles",
    "direct_debit_batches",
    "dunning",
    "fiscal_bridge",
    "fx_rates",
    "job_runs",
    "mandates",
]
