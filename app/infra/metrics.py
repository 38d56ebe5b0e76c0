import logging

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.lifecycle = None
            self.schedule_entries = None
            self.subscription_jobs = None
            self.subscription_invoices = None
            self.sweep_runs = None
            return

        self.lifecycle = Counter(
            "subscription_lifecycle_total",
            "Subscription lifecycle transitions by action.",
            ["action"],
            registry=self.registry,
        )
        self.schedule_entries = Counter(
            "schedule_entries_generated_total",
            "Schedule entries inserted by rolling-window generation.",
            registry=self.registry,
        )
        self.subscription_jobs = Counter(
            "subscription_jobs_total",
            "Schedule entry materialization outcomes.",
            ["result"],
            registry=self.registry,
        )
        self.subscription_invoices = Counter(
            "subscription_invoices_total",
            "Subscription invoices generated per billing model.",
            ["billing_model"],
            registry=self.registry,
        )
        self.sweep_runs = Counter(
            "sweep_runs_total",
            "Periodic sweep runs per job and outcome.",
            ["job", "status"],
            registry=self.registry,
        )

    def record_lifecycle(self, action: str) -> None:
        if not self.enabled or self.lifecycle is None:
            return
        self.lifecycle.labels(action=action).inc()

    def record_schedule_entries(self, count: int) -> None:
        if not self.enabled or self.schedule_entries is None:
            return
        if count <= 0:
            return
        self.schedule_entries.inc(count)

    def record_subscription_job(self, result: str, count: int = 1) -> None:
        if not self.enabled or self.subscription_jobs is None:
            return
        if count <= 0:
            return
        self.subscription_jobs.labels(result=result).inc(count)

    def record_subscription_invoice(self, billing_model: str) -> None:
        if not self.enabled or self.subscription_invoices is None:
            return
        self.subscription_invoices.labels(billing_model=billing_model).inc()

    def record_sweep(self, job: str, status: str) -> None:
        if not self.enabled or self.sweep_runs is None:
            return
        self.sweep_runs.labels(job=job, status=status).inc()

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
