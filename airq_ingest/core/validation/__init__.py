from .payload_validator import DEFAULT_MAX_FUTURE_SKEW, ValidationResult, validate_reading

__all__ = ["DEFAULT_MAX_FUTURE_SKEW", "ValidationResult", "validate_reading"]
