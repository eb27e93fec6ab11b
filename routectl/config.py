DEFAULT_CONFIG = {
    "backoff_base_ms": "1000",
    "backoff_cap_ms": "300000",
    "max_attempts_default": "3",
    "poll_interval_ms": "2000",
    # PROCESSING claims older than this are released (24h)
    "processing_timeout_ms": "86400000",
    "timezone": "America/Denver",
    "cluster_epsilon_mi": "1.5",
    "cluster_min_points": "2",
    "cluster_max_radius_mi": "5",
    "minutes_per_stop": "15",
    "average_speed_mph": "25",
    "depot_lat": "",
    "depot_lng": "",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

# Recurring pipeline jobs registered when workers start: (task name, cron)
RECURRING_JOBS = (
    ("optimize-routes", "0 2 * * *"),
    ("send-reminders", "0 8 * * *"),
)

RECURRING_PRIORITY = -10
ADMIN_PRIORITY = 10
