"""
Unit tests for package inspection and generated scripts.
"""

import plistlib
from pathlib import Path
from unittest.mock import patch

import pytest

from tests.fakes import build_flat_pkg
from xolo_library.engines import packages
from xolo_library.engines import scripts
from xolo_library.exceptions import ValidationError


@pytest.mark.unit
class TestPackageInspection:
    """Test flat package inspection."""

    def test_distribution_package_detected(self, temp_storage_dir: Path) -> None:
        """Test a package with a Distribution file is a distribution package."""
        pkg = build_flat_pkg(temp_storage_dir / "dist.pkg", distribution=True)
        assert packages.is_distribution_pkg(pkg) is True

    def test_component_package_detected(self, temp_storage_dir: Path) -> None:
        """Test a package without one is a component package."""
        pkg = build_flat_pkg(temp_storage_dir / "component.pkg", distribution=False)
        assert packages.is_distribution_pkg(pkg) is False

    def test_zip_is_never_distribution(self, temp_storage_dir: Path) -> None:
        """Test zipped bundle packages are never distribution packages."""
        bundle = temp_storage_dir / "Foo.pkg.zip"
        bundle.write_bytes(b"PK\x03\x04")
        assert packages.is_distribution_pkg(bundle) is False

    def test_non_xar_rejected(self, temp_storage_dir: Path) -> None:
        """Test a file without the xar magic is rejected."""
        bogus = temp_storage_dir / "bogus.pkg"
        bogus.write_bytes(b"this is not a package at all, just text")

        with pytest.raises(ValidationError, match="not a flat package"):
            packages.read_xar_toc(bogus)

    def test_truncated_file_rejected(self, temp_storage_dir: Path) -> None:
        """Test a file shorter than the xar header is rejected."""
        short = temp_storage_dir / "short.pkg"
        short.write_bytes(b"xar!")

        with pytest.raises(ValidationError, match="too short"):
            packages.read_xar_toc(short)

    def test_inspect_package(self, temp_storage_dir: Path) -> None:
        """Test inspection computes the digest and the MDM manifest."""
        pkg = build_flat_pkg(temp_storage_dir / "Foo.pkg")

        info = packages.inspect_package(pkg, "https://dist.example.com/Foo.pkg", "Foo", "1.0", "com.example.foo")

        assert info.sha_512 == packages.file_digest(pkg, "sha512")
        assert info.dist_pkg is True
        assert info.size == pkg.stat().st_size
        manifest = plistlib.loads(info.manifest.encode("utf-8"))
        metadata = manifest["items"][0]["metadata"]
        assert metadata["bundle-identifier"] == "com.example.foo"
        assert metadata["bundle-version"] == "1.0"
        assert manifest["items"][0]["assets"][0]["url"] == "https://dist.example.com/Foo.pkg"

    def test_needs_signing(self, temp_storage_dir: Path) -> None:
        """Test only unsigned flat packages are signed, and only when enabled."""
        pkg = build_flat_pkg(temp_storage_dir / "Foo.pkg")

        assert packages.needs_signing(pkg, sign_pkgs=False) is False
        assert packages.needs_signing(temp_storage_dir / "Foo.pkg.zip", sign_pkgs=True) is False
        with patch.object(packages, "is_signed", return_value=True):
            assert packages.needs_signing(pkg, sign_pkgs=True) is False
        with patch.object(packages, "is_signed", side_effect=FileNotFoundError):
            assert packages.needs_signing(pkg, sign_pkgs=True) is True


@pytest.mark.unit
class TestScripts:
    """Test scripts generated for Jamf Pro."""

    def test_uninstall_script_lists_ids(self) -> None:
        """Test package ids are quoted into the uninstall script."""
        script = scripts.uninstall_script_for_ids(["com.example.foo", "com.example.foo helper"])

        assert scripts.PKG_IDS_PLACEHOLDER not in script
        assert "com.example.foo" in script
        assert "'com.example.foo helper'" in script

    def test_last_used_script_quotes_paths(self) -> None:
        """Test paths are quoted into the last-used EA script."""
        script = scripts.last_used_ea_script(["/Applications/Foo Bar.app", "/usr/local/bin/foo"])

        assert script.startswith("#!/bin/zsh")
        assert "'/Applications/Foo Bar.app'" in script
        assert "<result>$latest</result>" in script
