from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# Scrape request metrics
# ---------------------------------------------------------------------------
scrape_requests_total = Counter(
    "scrape_requests_total",
    "Total number of scrape requests by outcome",
    ["status"],
)
scrape_duration_seconds = Histogram(
    "scrape_duration_seconds",
    "End-to-end scrape duration in seconds",
    buckets=[0.5, 1, 2, 5, 10, 15, 20, 30, 45, 60, 90],
)

# ---------------------------------------------------------------------------
# Tier metrics (static fetch vs browser capture)
# ---------------------------------------------------------------------------
tier_attempts_total = Counter(
    "tier_attempts_total",
    "Tier attempts by tier and outcome",
    ["tier", "outcome"],
)
tier_duration_seconds = Histogram(
    "tier_duration_seconds",
    "Time spent inside a tier in seconds",
    ["tier"],
    buckets=[0.25, 0.5, 1, 2, 5, 10, 20, 30, 60],
)
fetch_strategy_wins_total = Counter(
    "fetch_strategy_wins_total",
    "Static fetch race winners by strategy name",
    ["strategy"],
)

# ---------------------------------------------------------------------------
# Browser capture metrics
# ---------------------------------------------------------------------------
capture_attempts_total = Counter(
    "capture_attempts_total",
    "Browser capture attempts by outcome",
    ["outcome"],
)
capture_snapshots_total = Counter(
    "capture_snapshots_total",
    "HTML snapshots recorded by pipeline stage",
    ["stage"],
)
active_browser_contexts = Gauge(
    "active_browser_contexts",
    "Number of currently open browser contexts",
)
browser_pool_exhausted_total = Counter(
    "browser_pool_exhausted_total",
    "Times a capture could not get a browser slot",
)

# ---------------------------------------------------------------------------
# Extraction metrics
# ---------------------------------------------------------------------------
content_strategy_selected_total = Counter(
    "content_strategy_selected_total",
    "Winning content extraction strategy",
    ["strategy"],
)
images_extracted = Histogram(
    "images_extracted",
    "Number of images returned per extraction",
    buckets=[0, 1, 2, 3, 5, 10],
)
