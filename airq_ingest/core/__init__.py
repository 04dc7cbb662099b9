"""Core - piezas puras compartidas por las dos vías de ingreso.

Estructura:
- domain/      → Lectura canónica, sensor, eventos de ingesta
- transform/   → Payload del dispositivo → lectura canónica
- validation/  → Rangos y reloj
- topics.py    → Regla de topic sensors/{sensorId}/data
"""
