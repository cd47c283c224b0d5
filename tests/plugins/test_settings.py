"""
Tests for Migration Settings

These tests validate environment parsing, derived defaults and validation
of the engine tunables.
"""

import pytest

from legacy_pg_migration.settings import (
    FAST_HASH_ITERATIONS,
    SECURE_HASH_ITERATIONS,
    MigrationSettings,
    default_worker_count,
    default_writer_count,
)


class TestFromEnv:
    """Test building settings from environment variables."""

    def test_defaults_from_empty_environment(self):
        """Test unset variables fall back to documented defaults."""
        settings = MigrationSettings.from_env({})

        assert settings.batch_size == 500
        assert settings.binary_batch_size == 50
        assert settings.batch_byte_budget == 64 * 1024 * 1024
        assert settings.transform_workers == default_worker_count()
        assert settings.raw_queue_capacity == max(1000, settings.transform_workers * 2000)
        assert settings.batch_queue_capacity == max(4, settings.raw_queue_capacity // 500)
        assert settings.bulk_writers is None
        assert settings.fast_mode is True
        assert settings.hash_iterations == FAST_HASH_ITERATIONS
        assert settings.max_binary_bytes == 50 * 1024 * 1024
        assert settings.binary_chunk_bytes == 8 * 1024
        assert settings.skip_binary_payloads is False
        assert settings.progress_interval == 1000
        assert settings.error_log_limit == 10
        assert settings.encryption_key is None

    def test_explicit_values(self):
        """Test explicit variables override defaults and drive derived capacities."""
        settings = MigrationSettings.from_env({
            'MIGRATION_BATCH_SIZE': '100',
            'TRANSFORM_WORKERS': '3',
            'BULK_WRITERS': '2',
            'SKIP_BINARY_PAYLOADS': 'yes',
            'FIELD_ENCRYPTION_KEY': 'a2V5',
        })

        assert settings.batch_size == 100
        assert settings.transform_workers == 3
        assert settings.raw_queue_capacity == 6000
        assert settings.batch_queue_capacity == 60
        assert settings.bulk_writers == 2
        assert settings.skip_binary_payloads is True
        assert settings.encryption_key == 'a2V5'

    def test_secure_mode_uses_high_iteration_count(self):
        """Test disabling fast mode switches the hashing cost."""
        settings = MigrationSettings.from_env({'MIGRATION_FAST_MODE': 'false'})

        assert settings.fast_mode is False
        assert settings.hash_iterations == SECURE_HASH_ITERATIONS

    def test_explicit_iterations_win_over_mode(self):
        """Test HASH_ITERATIONS overrides the mode default."""
        settings = MigrationSettings.from_env({'MIGRATION_FAST_MODE': '0', 'HASH_ITERATIONS': '42'})
        assert settings.hash_iterations == 42

    def test_blank_values_are_ignored(self):
        """Test blank variables behave like unset ones."""
        settings = MigrationSettings.from_env({'MIGRATION_BATCH_SIZE': '  ', 'FIELD_ENCRYPTION_KEY': ''})
        assert settings.batch_size == 500
        assert settings.encryption_key is None

    @pytest.mark.parametrize('name, value', [
        ('MIGRATION_BATCH_SIZE', 'many'),
        ('MIGRATION_BATCH_SIZE', '0'),
        ('TRANSFORM_WORKERS', '-1'),
    ])
    def test_invalid_integers_raise(self, name, value):
        """Test malformed or non-positive integers are rejected."""
        with pytest.raises(ValueError, match=name):
            MigrationSettings.from_env({name: value})

    def test_error_log_limit_may_be_zero(self):
        """Test detailed row logging can be switched off."""
        assert MigrationSettings.from_env({'ROW_ERROR_LOG_LIMIT': '0'}).error_log_limit == 0


class TestValidation:
    """Test settings invariants."""

    def test_rejects_zero_batch_size(self):
        """Test batch size must be positive."""
        with pytest.raises(ValueError, match='batch_size'):
            MigrationSettings(batch_size=0)

    def test_rejects_too_many_writers(self):
        """Test writer count is capped."""
        with pytest.raises(ValueError, match='bulk_writers'):
            MigrationSettings(bulk_writers=5)

    def test_rejects_ceiling_below_chunk(self):
        """Test the binary ceiling cannot be smaller than one read chunk."""
        with pytest.raises(ValueError):
            MigrationSettings(max_binary_bytes=10, binary_chunk_bytes=100)

    def test_settings_are_immutable(self):
        """Test settings cannot be changed during a run."""
        settings = MigrationSettings()
        with pytest.raises(Exception):
            settings.batch_size = 10


class TestWorkerCounts:
    """Test worker and writer count defaults."""

    def test_worker_count_leaves_one_core(self):
        """Test transform workers default to cores minus one."""
        assert default_worker_count(8) == 7
        assert default_worker_count(1) == 1

    def test_transactional_runs_use_one_writer(self):
        """Test atomic runs always get a single writer."""
        assert default_writer_count(True, cpu_count=16) == 1
        assert MigrationSettings(bulk_writers=4).writer_count(transactional=True) == 1

    def test_independent_writer_count(self):
        """Test independent runs use half the cores capped at four."""
        assert default_writer_count(False, cpu_count=2) == 1
        assert default_writer_count(False, cpu_count=6) == 3
        assert default_writer_count(False, cpu_count=32) == 4
        assert MigrationSettings(bulk_writers=2).writer_count(transactional=False) == 2
