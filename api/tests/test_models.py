"""Tests for model-level guards."""

import pytest

from core.errors import InvalidTransitionError
from tests.factories import CertificateFactory

pytestmark = pytest.mark.unit


class TestBlockchainHashWriteOnce:
    def test_first_write_allowed(self):
        certificate = CertificateFactory.build()
        assert certificate.blockchain_hash is None

        certificate.blockchain_hash = "mem:1"

        assert certificate.blockchain_hash == "mem:1"

    def test_set_at_construction(self):
        certificate = CertificateFactory.build(blockchain_hash="mem:1")

        assert certificate.blockchain_hash == "mem:1"

    def test_rewriting_same_value_allowed(self):
        certificate = CertificateFactory.build(blockchain_hash="mem:1")

        certificate.blockchain_hash = "mem:1"

        assert certificate.blockchain_hash == "mem:1"

    def test_overwrite_rejected(self):
        certificate = CertificateFactory.build(blockchain_hash="mem:1")

        with pytest.raises(InvalidTransitionError, match="already anchored"):
            certificate.blockchain_hash = "mem:2"

        assert certificate.blockchain_hash == "mem:1"

    def test_clearing_rejected(self):
        certificate = CertificateFactory.build(blockchain_hash="mem:1")

        with pytest.raises(InvalidTransitionError):
            certificate.blockchain_hash = None
