"""Unit tests for import settings."""

import pytest
from pydantic import ValidationError

from db2cms_import.config import ImportSettings


class TestImportSettings:
    """Tests for ImportSettings."""

    def test_defaults(self) -> None:
        settings = ImportSettings(_env_file=None)

        assert settings.batch_flush_size == 500
        assert settings.default_status == "draft"
        assert "pdf" in settings.file_extensions_list

    def test_home_domain_from_cms_url(self) -> None:
        """The local domain defaults to the CMS host, including its port."""
        settings = ImportSettings(_env_file=None, cms_url="http://WWW.Example.com:8080/")

        assert settings.home_domain == "www.example.com:8080"

    def test_local_domain_override(self) -> None:
        settings = ImportSettings(
            _env_file=None, cms_url="http://cms.test", local_domain=" Example.COM "
        )

        assert settings.home_domain == "example.com"

    def test_file_extensions_list(self) -> None:
        settings = ImportSettings(_env_file=None, file_extensions=" .PDF, doc ,,")

        assert settings.file_extensions_list == ["pdf", "doc"]

    def test_flush_size_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            ImportSettings(_env_file=None, batch_flush_size=0)

    def test_environment_prefix(self, monkeypatch) -> None:
        """Settings are read from DB2CMS_ environment variables."""
        monkeypatch.setenv("DB2CMS_CMS_URL", "https://site.test")
        monkeypatch.setenv("DB2CMS_UNIQUE_TERMS", "true")

        settings = ImportSettings(_env_file=None)

        assert settings.cms_url == "https://site.test"
        assert settings.unique_terms is True
