from .payload_transformer import (
    TransformFailure,
    TransformResult,
    resolve_observed_at,
    transform_device_payload,
)

__all__ = ["TransformFailure", "TransformResult", "resolve_observed_at", "transform_device_payload"]
