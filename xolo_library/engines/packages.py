"""Inspection and signing of uploaded installer packages.

Flat .pkg files are xar archives: a fixed big-endian header, then a
zlib-compressed XML table of contents. A package is a distribution package
when its top level holds a 'Distribution' file, which is what MDM
InstallEnterpriseApplication requires.

Zipped bundle packages (.zip) are accepted for upload but are never
distribution packages and are never signed.
"""

import hashlib
import logging
import plistlib
import struct
import subprocess
import xml.etree.ElementTree as ET
import zlib
from dataclasses import dataclass
from pathlib import Path

from ..exceptions import FatalError
from ..exceptions import ValidationError

logger = logging.getLogger(__name__)

XAR_MAGIC = b"xar!"
# magic, header size, format version, compressed TOC length, uncompressed TOC length, checksum algorithm
XAR_HEADER = struct.Struct(">4sHHQQI")

CHUNK_SIZE = 1024 * 1024


@dataclass
class PackageInfo:
    """Facts about an uploaded package that end up on the Version record."""

    sha_512: str
    dist_pkg: bool
    manifest: str
    size: int


def read_xar_toc(path: Path) -> ET.Element:
    """Parse the table of contents of a flat package.

    Raises:
        ValidationError: If the file is not a xar archive
    """
    with open(path, "rb") as f:
        header = f.read(XAR_HEADER.size)
        if len(header) < XAR_HEADER.size:
            raise ValidationError(f"{path.name} is too short to be a flat package")
        magic, header_size, _version, toc_length, _toc_raw_length, _cksum_alg = XAR_HEADER.unpack(header)
        if magic != XAR_MAGIC:
            raise ValidationError(f"{path.name} is not a flat package")
        f.seek(header_size)
        compressed = f.read(toc_length)

    try:
        return ET.fromstring(zlib.decompress(compressed))
    except (zlib.error, ET.ParseError) as e:
        raise ValidationError(f"{path.name} has an unreadable table of contents: {e}") from e


def is_distribution_pkg(path: Path) -> bool:
    if path.suffix.lower() != ".pkg":
        return False
    toc = read_xar_toc(path).find("toc")
    if toc is None:
        return False
    return any(entry.findtext("name") == "Distribution" for entry in toc.findall("file"))


def file_digest(path: Path, algorithm: str) -> str:
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def build_manifest(
    path: Path,
    url: str,
    title: str,
    version: str,
    bundle_id: str | None = None,
) -> str:
    """MDM InstallApplication manifest for a package, as plist XML."""
    size = path.stat().st_size
    manifest = {
        "items": [
            {
                "assets": [
                    {
                        "kind": "software-package",
                        "url": url,
                        "sha256-size": size,
                        "sha256s": [file_digest(path, "sha256")],
                    }
                ],
                "metadata": {
                    "kind": "software",
                    "title": title,
                    "sizeInBytes": size,
                    "bundle-identifier": bundle_id or f"com.xolo.{title}",
                    "bundle-version": version,
                },
            }
        ]
    }
    return plistlib.dumps(manifest, fmt=plistlib.FMT_XML).decode("utf-8")


def inspect_package(path: Path, url: str, title: str, version: str, bundle_id: str | None = None) -> PackageInfo:
    """Checksum, distribution flag and MDM manifest of a staged package."""
    return PackageInfo(
        sha_512=file_digest(path, "sha512"),
        dist_pkg=is_distribution_pkg(path),
        manifest=build_manifest(path, url, title, version, bundle_id),
        size=path.stat().st_size,
    )


def is_signed(path: Path) -> bool:
    result = subprocess.run(
        ["pkgutil", "--check-signature", str(path)],
        capture_output=True,
        text=True,
        check=False,
    )
    return result.returncode == 0 and "Status: signed" in result.stdout


def sign_package(path: Path, identity: str, keychain: str | None = None) -> None:
    """Sign a flat package in place with productsign.

    Raises:
        FatalError: If productsign is missing or fails
    """
    signed = path.with_name(f"{path.stem}-signed{path.suffix}")
    cmd = ["productsign", "--sign", identity]
    if keychain:
        cmd += ["--keychain", keychain]
    cmd += [str(path), str(signed)]

    logger.info(f"Signing {path.name} as '{identity}'")
    try:
        subprocess.run(cmd, capture_output=True, text=True, check=True)
    except FileNotFoundError as e:
        raise FatalError("productsign is not available on this server") from e
    except subprocess.CalledProcessError as e:
        signed.unlink(missing_ok=True)
        raise FatalError(f"Signing {path.name} failed: {e.stderr.strip() or e.returncode}") from e

    signed.replace(path)


def needs_signing(path: Path, sign_pkgs: bool) -> bool:
    """Flat packages are signed when signing is on and they aren't signed already."""
    if not sign_pkgs or path.suffix.lower() != ".pkg":
        return False
    try:
        return not is_signed(path)
    except FileNotFoundError:
        logger.warning("pkgutil is not available; treating package as unsigned")
        return True
