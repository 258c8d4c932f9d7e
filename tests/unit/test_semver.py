"""
Unit tests for semantic version parsing and ordering.

Tests cover:
- Strict SemVer2 parsing
- Precedence, pre-releases and build metadata
- Next-version validation
"""

import pytest

from dbaas.dataset_engine.errors import InvalidParamError
from dbaas.dataset_engine.semver import SemVer, validate_next_version


class TestSemVerParse:
    """Tests for SemVer.parse."""

    def test_parse_release(self):
        v = SemVer.parse("1.2.3")
        assert (v.major, v.minor, v.patch) == (1, 2, 3)
        assert v.prerelease == ()

    def test_parse_prerelease_and_build(self):
        v = SemVer.parse("1.0.0-alpha.1+build.5")
        assert v.prerelease == ("alpha", "1")
        assert v.build == "build.5"
        assert str(v) == "1.0.0-alpha.1+build.5"

    @pytest.mark.parametrize("raw", ["", "1", "1.0", "v1.0.0", "01.0.0", "1.0.0-", "1.0.0-01", "1.0.0+"])
    def test_rejects_invalid(self, raw):
        with pytest.raises(InvalidParamError):
            SemVer.parse(raw)


class TestSemVerOrdering:
    """Tests for SemVer precedence."""

    def test_numeric_components(self):
        assert SemVer.parse("1.9.0") < SemVer.parse("1.10.0")
        assert SemVer.parse("2.0.0") > SemVer.parse("1.99.99")

    def test_prerelease_before_release(self):
        assert SemVer.parse("1.0.0-rc.1") < SemVer.parse("1.0.0")

    def test_prerelease_chain(self):
        chain = [
            "1.0.0-alpha",
            "1.0.0-alpha.1",
            "1.0.0-alpha.beta",
            "1.0.0-beta",
            "1.0.0-beta.2",
            "1.0.0-beta.11",
            "1.0.0-rc.1",
            "1.0.0",
        ]
        parsed = [SemVer.parse(v) for v in chain]
        assert parsed == sorted(parsed)

    def test_build_metadata_ignored(self):
        assert SemVer.parse("1.0.0+a") == SemVer.parse("1.0.0+b")


class TestValidateNextVersion:
    """Tests for validate_next_version."""

    def test_first_version(self):
        assert str(validate_next_version("", "0.1.0")) == "0.1.0"

    def test_greater_version_accepted(self):
        validate_next_version("1.0.0", "1.0.1")
        validate_next_version("1.0.0-rc.1", "1.0.0")

    @pytest.mark.parametrize("candidate", ["1.0.0", "0.9.0", "1.0.0+rebuild", "1.0.0-rc.9"])
    def test_not_greater_rejected(self, candidate):
        with pytest.raises(InvalidParamError):
            validate_next_version("1.0.0", candidate)

    def test_malformed_candidate_rejected(self):
        with pytest.raises(InvalidParamError):
            validate_next_version("1.0.0", "2.0")
