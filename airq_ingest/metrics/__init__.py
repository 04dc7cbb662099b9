"""Métricas de ingesta: buffer de eventos, agregados y Prometheus."""
