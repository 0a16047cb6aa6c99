"""Device-level services: OTA, update polling, telemetry, commands and console."""
