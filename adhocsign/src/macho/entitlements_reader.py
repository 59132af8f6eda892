"""Read the entitlements embedded in a Mach-O code signature.

Only the first architecture slice of a universal binary is inspected.
LIEF locates LC_CODE_SIGNATURE; the signature SuperBlob itself is walked
here since LIEF exposes it only as raw bytes.

Layout (all fields big-endian, see xnu bsd/sys/codesign.h):

    SuperBlob: magic u32 | length u32 | count u32 | count * (type u32, offset u32)
    Blob:      magic u32 | length u32 | payload
"""

import plistlib
import struct
from xml.parsers.expat import ExpatError
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from lief import MachO

from adhocsign.logger import get_console
from adhocsign.src.core.errors import IoError, MachOParseError

MH_MAGIC = 0xFEEDFACE
MH_CIGAM = 0xCEFAEDFE
MH_MAGIC_64 = 0xFEEDFACF
MH_CIGAM_64 = 0xCFFAEDFE
FAT_MAGIC = 0xCAFEBABE
FAT_MAGIC_64 = 0xCAFEBABF

CSMAGIC_EMBEDDED_SIGNATURE = 0xFADE0CC0
CSMAGIC_EMBEDDED_ENTITLEMENTS = 0xFADE7171
CSSLOT_ENTITLEMENTS = 5

_THIN_MAGICS = {MH_MAGIC, MH_CIGAM, MH_MAGIC_64, MH_CIGAM_64}


def first_slice_range(data: bytes) -> Tuple[int, int]:
    """Return (offset, size) of the first architecture slice in `data`."""
    if len(data) < 4:
        raise MachOParseError("File too small to be a Mach-O binary")

    magic_be = struct.unpack_from(">I", data, 0)[0]
    if magic_be in _THIN_MAGICS:
        return 0, len(data)

    if magic_be in (FAT_MAGIC, FAT_MAGIC_64):
        if len(data) < 8:
            raise MachOParseError("Truncated fat header")
        nfat_arch = struct.unpack_from(">I", data, 4)[0]
        if nfat_arch == 0:
            raise MachOParseError("Fat binary contains no architectures")
        try:
            if magic_be == FAT_MAGIC:
                _, _, offset, size, _ = struct.unpack_from(">5I", data, 8)
            else:
                _, _, offset, size, _, _ = struct.unpack_from(">IIQQII", data, 8)
        except struct.error as e:
            raise MachOParseError("Truncated fat architecture table") from e
        if offset + size > len(data):
            raise MachOParseError("First architecture slice extends past end of file")
        return offset, size

    raise MachOParseError(f"Not a Mach-O binary (magic 0x{magic_be:08x})")


def find_entitlements_blob(signature: bytes) -> Optional[bytes]:
    """Return the entitlements payload of a code signature SuperBlob, if any."""
    if len(signature) < 12:
        raise MachOParseError("Code signature is truncated")

    magic, length, count = struct.unpack_from(">III", signature, 0)
    if magic != CSMAGIC_EMBEDDED_SIGNATURE:
        raise MachOParseError(f"Unexpected code signature magic 0x{magic:08x}")
    if length > len(signature) or 12 + count * 8 > length:
        raise MachOParseError("Code signature index exceeds its declared length")

    for i in range(count):
        slot_type, offset = struct.unpack_from(">II", signature, 12 + i * 8)
        if slot_type != CSSLOT_ENTITLEMENTS:
            continue
        if offset + 8 > length:
            raise MachOParseError("Entitlements blob offset out of bounds")
        blob_magic, blob_length = struct.unpack_from(">II", signature, offset)
        if blob_magic != CSMAGIC_EMBEDDED_ENTITLEMENTS:
            raise MachOParseError(f"Unexpected entitlements magic 0x{blob_magic:08x}")
        if blob_length < 8 or offset + blob_length > length:
            raise MachOParseError("Entitlements blob length out of bounds")
        return signature[offset + 8 : offset + blob_length]

    return None


class MachOEntitlementsReader:
    """Per-invocation view over one binary; nothing is cached between reads."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.console = get_console()

    def _parse_first_slice(self, path: Path) -> "MachO.Binary":
        try:
            parsed = MachO.parse(str(path))
        except Exception as e:
            raise MachOParseError(f"LIEF failed to parse {path}: {e}") from e
        if parsed is None:
            raise MachOParseError(f"LIEF could not parse {path}")

        if isinstance(parsed, MachO.FatBinary):
            if parsed.size == 0:
                raise MachOParseError(f"No architectures found in {path}")
            return parsed.at(0)
        return parsed

    def read_entitlements(self) -> Optional[str]:
        """Return the raw entitlements XML, or None when there is none."""
        try:
            data = self.path.read_bytes()
        except OSError as e:
            raise IoError(self.path, e) from e

        slice_offset, slice_size = first_slice_range(data)
        binary = self._parse_first_slice(self.path)

        if not binary.has_code_signature:
            self.console.log(f"[yellow]No code signature in:[/] {self.path}")
            return None

        signature_command = binary.code_signature
        start = slice_offset + signature_command.data_offset
        end = start + signature_command.data_size
        if signature_command.data_size == 0 or end > slice_offset + slice_size:
            raise MachOParseError(f"Code signature of {self.path} is out of bounds")

        payload = find_entitlements_blob(data[start:end])
        if payload is None:
            self.console.log(f"[yellow]No entitlements slot in:[/] {self.path}")
            return None

        try:
            return payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MachOParseError(f"Entitlements of {self.path} are not UTF-8") from e

    def read_entitlements_dict(self) -> Optional[Dict]:
        xml = self.read_entitlements()
        if xml is None:
            return None
        try:
            return plistlib.loads(xml.encode("utf-8"), fmt=plistlib.FMT_XML)
        except (plistlib.InvalidFileException, ValueError, ExpatError) as e:
            raise MachOParseError(
                f"Entitlements of {self.path} are not a valid plist: {e}"
            ) from e


def read_entitlements(path: Union[str, Path]) -> Optional[str]:
    return MachOEntitlementsReader(path).read_entitlements()
