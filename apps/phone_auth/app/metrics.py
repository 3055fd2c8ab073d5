from prometheus_client import Counter, Histogram

# Registered once per process; create_app() may run many times under tests.
REQUESTS = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

OTP_ISSUED = Counter("phone_auth_otp_issued_total", "OTP codes issued")
OTP_VERIFY = Counter("phone_auth_otp_verify_total", "OTP verification outcomes", ["outcome"])
BLOCK_TRANSITIONS = Counter("phone_auth_block_transitions_total", "Block state transitions", ["state"])
RATE_LIMITED = Counter("phone_auth_rate_limited_total", "Requests denied by the rate limiter", ["scope"])
SUSPICIOUS_FLAGS = Counter("phone_auth_suspicious_flags_total", "Phones flagged for device fan-out")
