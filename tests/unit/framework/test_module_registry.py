"""
Unit tests for ModuleRegistry.

Tests cover:
- active module ids load their detector classes in config order
- instances are cached
- unknown ids and non-detector classes are rejected
"""

from unittest.mock import MagicMock

import pytest

from ledger_ingest.detectors.derivatives_anomaly import DerivativesAnomalyDetector
from ledger_ingest.detectors.transaction_anomaly import TransactionAnomalyDetector
from ledger_ingest.framework.module_registry import ModuleRegistry


class TestModuleRegistry:
    def setup_method(self) -> None:
        self.config_loader = MagicMock()
        self.config_loader.get_active_modules.return_value = ["MOD-001", "MOD-002"]
        self.registry = ModuleRegistry(self.config_loader)

    def test_load_active_modules(self) -> None:
        detectors = self.registry.load_active_modules()
        assert list(detectors) == ["MOD-001", "MOD-002"]
        assert isinstance(detectors["MOD-001"], TransactionAnomalyDetector)
        assert isinstance(detectors["MOD-002"], DerivativesAnomalyDetector)

    def test_detector_cached(self) -> None:
        assert self.registry.get_detector("MOD-001") is self.registry.get_detector("MOD-001")

    def test_unknown_module(self) -> None:
        with pytest.raises(KeyError):
            self.registry.get_detector("MOD-999")

    def test_non_detector_class_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setitem(ModuleRegistry.MODULE_MAPPING, "MOD-BAD", "ledger_ingest.framework.merge.TypeVar")
        with pytest.raises(TypeError):
            self.registry.get_detector("MOD-BAD")

    def test_list_active_modules(self) -> None:
        self.config_loader.get_active_modules.return_value = ["MOD-002"]
        assert self.registry.list_active_modules() == ["MOD-002"]
