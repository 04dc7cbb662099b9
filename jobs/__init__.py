"""Jobs operativos del servicio de ingesta (sweep, backfill, limpieza, listener)."""
