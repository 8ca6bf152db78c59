from prometheus_client import Counter, Gauge


reminders_created_total = Counter(
    "reminders_created_total",
    "Total reminders created via API",
)

scheduler_scans_total = Counter(
    "reminder_scheduler_scans_total",
    "Total scheduler scan cycles",
)

scheduler_skipped_scans_total = Counter(
    "reminder_scheduler_skipped_scans_total",
    "Scan cycles skipped because no mail configuration or recipient was available",
)

scheduler_dispatched_total = Counter(
    "reminder_scheduler_dispatched_total",
    "Total reminders dispatched by scheduler",
)

reminders_dispatch_success_total = Counter(
    "reminders_dispatch_success_total",
    "Total successful email deliveries",
)

reminders_dispatch_failed_total = Counter(
    "reminders_dispatch_failed_total",
    "Total failed email deliveries",
    ["stage"],
)

deliveries_in_flight = Gauge(
    "reminder_deliveries_in_flight",
    "SMTP sessions currently open",
)
