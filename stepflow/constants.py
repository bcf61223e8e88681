"""Default values shared across the stepflow engine."""

DEFAULT_BASE_DELAY_MS = 2000
DEFAULT_MAX_EXECUTION_TIME_MS = 300_000
DEFAULT_MAX_VALIDATION_REPAIRS = 3
DEFAULT_CONFIG_PATH = "stepflow.yaml"
