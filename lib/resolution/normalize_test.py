"""Tests for canonicalization helpers."""

import pytest

from lib.resolution.normalize import (
    canonicalize_url,
    domain_of,
    extract_partita_iva,
    is_skip_domain,
    is_valid_partita_iva,
    name_fingerprint,
    normalize_tax_id,
    normalize_text,
    phone_digits,
    strip_legal_suffixes,
)


@pytest.mark.no_db
class TestCanonicalizeUrl:
    @pytest.mark.parametrize("raw", [
        "http://www.Rossi.it/",
        "https://rossi.it",
        "rossi.it",
        "WWW.ROSSI.IT/index.html",
        "https://www.rossi.it:443/?utm_source=google#top",
        "//rossi.it/",
    ])
    def test_variants_collapse_to_one_form(self, raw):
        assert canonicalize_url(raw) == "https://rossi.it"

    @pytest.mark.parametrize("raw", [
        "http://www.Rossi.it/Chi-Siamo/",
        "https://shop.example.com:8080/a//b/index.php?x=1",
        "rossi.it",
        "https://xn--caff-dma.it/",
        "rossi.it/index.html/",
        "rossi.it/home.php/index.html",
        "www.www.rossi.it",
        "www.Rossi.IT./Chi-Siamo//",
    ])
    def test_idempotent(self, raw):
        once = canonicalize_url(raw)
        assert canonicalize_url(once) == once

    def test_nested_index_pages_and_repeated_www_stripped(self):
        assert canonicalize_url("rossi.it/index.html/") == "https://rossi.it"
        assert canonicalize_url("www.www.rossi.it") == "https://rossi.it"

    def test_path_kept_lowercased(self):
        assert canonicalize_url("https://www.rossi.it/Contatti/") == "https://rossi.it/contatti"

    def test_non_default_port_kept(self):
        assert canonicalize_url("http://rossi.it:8080/") == "https://rossi.it:8080"

    @pytest.mark.parametrize("raw", [None, "", "   ", "not a url", "localhost", "https://rossi.it/bilancio.pdf"])
    def test_rejects_non_sites(self, raw):
        assert canonicalize_url(raw) is None

    def test_domain_of(self):
        assert domain_of("http://www.rossi.it:8080/x") == "rossi.it"
        assert domain_of(None) is None


@pytest.mark.no_db
class TestSkipDomains:
    def test_directory_and_subdomain_skipped(self):
        assert is_skip_domain("https://www.paginegialle.it/rossi")
        assert is_skip_domain("https://it-it.facebook.com/rossi")

    def test_company_site_kept(self):
        assert not is_skip_domain("https://rossisnc.it")

    def test_unparseable_skipped(self):
        assert is_skip_domain("")


@pytest.mark.no_db
class TestNames:
    def test_normalize_text_strips_accents(self):
        assert normalize_text("Società  Caffè-Bar") == "societa caffe bar"

    @pytest.mark.parametrize("name", ["Rossi Snc", "ROSSI S.n.c.", "Rossi & C. snc", "Ditta Rossi"])
    def test_legal_suffixes_stripped(self, name):
        assert strip_legal_suffixes(name) == "rossi"

    def test_only_legal_words_kept(self):
        assert strip_legal_suffixes("Societa Cooperativa") == "societa cooperativa"

    def test_fingerprint_ignores_legal_form(self):
        assert name_fingerprint("Rossi Snc", "Milano") == name_fingerprint("ROSSI S.R.L.", "milano")


@pytest.mark.no_db
class TestPhoneAndTaxId:
    def test_phone_digits(self):
        assert phone_digits("+39 02 1234 5678") == "0212345678"
        assert phone_digits("0039 02-12345") == "0212345"
        assert phone_digits(None) == ""

    def test_normalize_tax_id(self):
        assert normalize_tax_id("IT 012.345.678-90") == "01234567890"

    def test_valid_checksum(self):
        # Known-good P.IVA (Agenzia delle Entrate)
        assert is_valid_partita_iva("06363391001")
        assert is_valid_partita_iva("IT06363391001")

    def test_invalid_checksum(self):
        assert not is_valid_partita_iva("06363391002")
        assert not is_valid_partita_iva("00000000000")
        assert not is_valid_partita_iva("1234")

    def test_extract_from_footer(self):
        text = "© 2024 Rossi Snc - Via Roma 1, Milano - P.IVA 06363391001 - Privacy"
        assert extract_partita_iva(text) == "06363391001"

    def test_extract_skips_invalid_numbers(self):
        assert extract_partita_iva("P.IVA 06363391002") is None
        assert extract_partita_iva("") is None
