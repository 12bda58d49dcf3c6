"""Settings for booking-jobs: `public_config` (defaults), `secret_config` (REDIS_URL), `settings` (merged view)."""
