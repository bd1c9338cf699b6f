"""Application configuration using Pydantic settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Redis / queue
    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "scrape-jobs"
    queue_backend: str = "redis"  # "redis" or "memory"

    # App Settings
    debug: bool = False
    log_level: str = "INFO"
    log_dir: str = ""  # Empty = current working directory
    log_json: bool = True

    # ==========================================================================
    # Concurrency
    # ==========================================================================
    # Start conservative to avoid CPU spikes
    max_concurrency: int = 2  # Browser sessions in the pool
    max_workers: int = 3  # Jobs in flight per worker process

    # ==========================================================================
    # Scroll behaviour
    # ==========================================================================
    scroll_delay_min_ms: int = 800
    scroll_delay_max_ms: int = 2000
    scroll_increment_min_px: int = 300
    scroll_increment_max_px: int = 700
    max_scrolls: int = 30
    scroll_pause_probability: float = 0.15  # Chance of a longer reading pause
    scroll_pause_min_ms: int = 2000
    scroll_pause_max_ms: int = 5000
    reverse_scroll_probability: float = 0.05
    reverse_scroll_min_px: int = 50
    reverse_scroll_max_px: int = 150
    max_stall_cycles: int = 3
    observe_timeout_ms: int = 3000
    escalated_observe_timeout_ms: int = 6000
    near_bottom_threshold_px: int = 100
    scroll_min_items: int = 20
    scroll_max_duration_seconds: float = 180.0

    # ==========================================================================
    # Timeouts
    # ==========================================================================
    page_timeout_ms: int = 60000
    navigation_timeout_ms: int = 30000
    selector_timeout_ms: int = 10000
    fallback_selector_timeout_ms: int = 5000
    job_timeout_seconds: float = 600.0  # Hard wall-clock cap per job

    # ==========================================================================
    # Rate limiting (job starts per window, per worker)
    # ==========================================================================
    rate_limit_max: int = 10
    rate_limit_duration_ms: int = 60000

    # ==========================================================================
    # Retry / backoff
    # ==========================================================================
    retry_attempts: int = 3  # Global attempt ceiling per job
    retry_backoff_ms: int = 5000
    retry_max_backoff_ms: int = 60000

    # Per error kind: initial delay, growth factor, cap, attempt ceiling (0 = global)
    error_backoff: dict[str, dict] = {
        "timeout": {"initial_ms": 5000, "factor": 2.0, "max_ms": 60000, "max_attempts": 0},
        "network_failure": {"initial_ms": 5000, "factor": 2.0, "max_ms": 60000, "max_attempts": 0},
        "rate_limited": {"initial_ms": 30000, "factor": 3.0, "max_ms": 15 * 60 * 1000, "max_attempts": 0},
        "blocked_or_banned": {"initial_ms": 60000, "factor": 4.0, "max_ms": 30 * 60 * 1000, "max_attempts": 2},
        "challenge_presented": {"initial_ms": 60000, "factor": 2.0, "max_ms": 10 * 60 * 1000, "max_attempts": 0},
        "content_selector_missing": {"initial_ms": 10000, "factor": 2.0, "max_ms": 60000, "max_attempts": 2},
        "unknown": {"initial_ms": 5000, "factor": 2.0, "max_ms": 60000, "max_attempts": 0},
    }

    # ==========================================================================
    # Retention (mirrors removeOnComplete / removeOnFail)
    # ==========================================================================
    remove_on_complete_age_seconds: int = 3600  # Keep completed jobs for 1 hour
    remove_on_complete_count: int = 100  # Keep last 100 completed jobs
    remove_on_fail_age_seconds: int = 86400  # Keep failed jobs for 24 hours
    remove_on_fail_count: int = 500  # Keep last 500 failed jobs

    # ==========================================================================
    # Leases / stalled job recovery
    # ==========================================================================
    lease_duration_ms: int = 120000  # Should be longer than expected job time
    lease_renew_interval_seconds: float = 30.0
    stalled_interval_seconds: int = 30
    max_stalled_count: int = 2
    poll_interval_seconds: float = 1.0
    status_log_interval_seconds: int = 300

    # ==========================================================================
    # Shutdown
    # ==========================================================================
    shutdown_timeout_seconds: float = 30.0
    crash_shutdown_timeout_seconds: float = 10.0
    pool_close_timeout_seconds: float = 30.0

    # ==========================================================================
    # Browser
    # ==========================================================================
    headless: bool = True
    browser_executable_path: str = ""
    browser_args: list[str] = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-infobars",
        "--window-size=1920,1080",
        "--disable-dev-shm-usage",
    ]
    viewport_width: int = 1920
    viewport_height: int = 1080
    screenshot_dir: str = "."

    # ==========================================================================
    # Target site
    # ==========================================================================
    search_base_url: str = "https://www.tokopedia.com/search"
    item_selector: str = 'div[data-testid="master-product-card"]'
    item_selector_fallbacks: list[str] = [
        'div[data-testid="divSRPContentProducts"] > div',
        '[class*="product-card"]',
        '[class*="ProductCard"]',
    ]
    load_more_selectors: list[str] = [
        'button[data-testid="btnSRPLoadMore"]',
        '[data-testid*="LoadMore"]',
        '[class*="load-more"]',
    ]
    next_page_selectors: list[str] = [
        'a[data-testid="btnSRPNextPage"]',
        'button[aria-label="Next page"]',
    ]

    # ==========================================================================
    # Scraper
    # ==========================================================================
    max_pages_per_job: int = 5
    page_delay_min_ms: int = 800
    page_delay_max_ms: int = 2500

    # Metrics
    metrics_port: int = 0  # 0 = don't expose

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
