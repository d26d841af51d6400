from __future__ import annotations

import unittest

from app.config import Settings


class SettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)
        self.assertEqual(settings.retry_interval_minutes, 15)
        self.assertEqual(settings.max_retries, 3)
        self.assertEqual(settings.fallback_interval_minutes, 10)
        self.assertEqual(settings.tracking_interval_minutes, 10)
        self.assertEqual(settings.fallback_delivery_days, 7)

    def test_tight_polling_is_clamped_to_floors(self) -> None:
        settings = Settings(
            _env_file=None,
            retry_interval_minutes=1,
            fallback_interval_minutes=0,
            tracking_interval_minutes=1,
            max_retries=0,
            lock_ttl_seconds=5,
            worker_batch_size=-3,
            fallback_delivery_days=0,
            supplier_timeout_seconds=600,
        )
        self.assertEqual(settings.retry_interval_minutes, 5)
        self.assertEqual(settings.fallback_interval_minutes, 5)
        self.assertEqual(settings.tracking_interval_minutes, 2)
        self.assertEqual(settings.max_retries, 1)
        self.assertEqual(settings.lock_ttl_seconds, 30)
        self.assertEqual(settings.worker_batch_size, 1)
        self.assertEqual(settings.fallback_delivery_days, 1)
        self.assertEqual(settings.supplier_timeout_seconds, 120)

    def test_postgres_urls_are_normalized_to_psycopg(self) -> None:
        settings = Settings(_env_file=None, database_url='postgres://u:p@db:5432/app')
        self.assertEqual(settings.database_url_normalized, 'postgresql+psycopg://u:p@db:5432/app')
        sqlite = Settings(_env_file=None, database_url='sqlite:///local.db')
        self.assertEqual(sqlite.database_url_normalized, 'sqlite:///local.db')


if __name__ == '__main__':
    unittest.main()
