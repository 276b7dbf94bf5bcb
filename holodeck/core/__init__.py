"""Shared configuration, models, money helpers and telemetry."""
