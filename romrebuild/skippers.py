"""
Header skippers - detect known copier/emulator headers and strip them

Detectors follow the No-Intro XML layout:

    <detector>
      <name>Nintendo Famicon/NES</name>
      <rule start_offset="10">
        <data offset="0" value="4E45531A" result="true"/>
      </rule>
    </detector>

Offsets and sizes are hexadecimal, as in the published detector files.
"""

import logging
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, List, Optional

from .hashing import BUFFER_SIZE
from .models import CatalogParseError

logger = logging.getLogger(__name__)


def _hex_int(value: Optional[str], default: Optional[int] = None) -> Optional[int]:
    value = (value or '').strip()
    if not value:
        return default
    if value.upper() == 'EOF':
        return None
    return int(value, 16)


def _stream_size(stream: BinaryIO) -> int:
    here = stream.tell()
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(here)
    return size


@dataclass
class DataTest:
    """Bytes at an offset equal (or differ from) a value"""
    offset: int
    value: bytes
    result: bool = True

    def passes(self, stream: BinaryIO, size: int) -> bool:
        start = self.offset if self.offset >= 0 else size + self.offset
        if start < 0 or start + len(self.value) > size:
            return not self.result
        stream.seek(start)
        matched = stream.read(len(self.value)) == self.value
        return matched == self.result


@dataclass
class BitTest:
    """Masked bytes compared with AND/OR/XOR against a value"""
    operation: str
    offset: int
    mask: bytes
    value: bytes
    result: bool = True

    def passes(self, stream: BinaryIO, size: int) -> bool:
        if self.offset + len(self.mask) > size:
            return not self.result
        stream.seek(self.offset)
        data = stream.read(len(self.mask))
        if self.operation == 'and':
            masked = bytes(d & m for d, m in zip(data, self.mask))
        elif self.operation == 'or':
            masked = bytes(d | m for d, m in zip(data, self.mask))
        else:
            masked = bytes(d ^ m for d, m in zip(data, self.mask))
        return (masked == self.value) == self.result


@dataclass
class FileTest:
    """Whole-file size check; size may be the literal "po2" (power of two)"""
    size: Optional[int]
    operator: str = 'equal'
    power_of_two: bool = False
    result: bool = True

    def passes(self, stream: BinaryIO, size: int) -> bool:
        if self.power_of_two:
            matched = size > 0 and (size & (size - 1)) == 0
        elif self.operator == 'less':
            matched = size < self.size
        elif self.operator == 'greater':
            matched = size > self.size
        else:
            matched = size == self.size
        return matched == self.result


@dataclass
class SkipperRule:
    """One way of recognising a header, and how much of the file to keep"""
    start_offset: int = 0
    end_offset: Optional[int] = None
    operation: str = 'none'
    tests: List[object] = field(default_factory=list)
    source: str = ''

    def matches(self, stream: BinaryIO) -> bool:
        if not self.tests:
            return False
        size = _stream_size(stream)
        if size <= self.start_offset:
            return False
        try:
            return all(test.passes(stream, size) for test in self.tests)
        finally:
            stream.seek(0)

    def transform(self, in_stream: BinaryIO, out_stream: BinaryIO) -> bool:
        """
        Write the headerless form of in_stream to out_stream.

        Both streams are left open and rewound; returns False when the input
        is too short for this rule.
        """
        size = _stream_size(in_stream)
        end = size if self.end_offset is None else min(self.end_offset, size)
        if self.start_offset >= end:
            return False

        in_stream.seek(self.start_offset)
        remaining = end - self.start_offset
        if self.operation == 'none':
            while remaining > 0:
                data = in_stream.read(min(BUFFER_SIZE, remaining))
                if not data:
                    break
                out_stream.write(data)
                remaining -= len(data)
        else:
            out_stream.write(_swap(in_stream.read(remaining), self.operation))

        in_stream.seek(0)
        out_stream.seek(0)
        return True


def _swap(data: bytes, operation: str) -> bytes:
    buf = bytearray(data)
    if operation == 'bitswap':
        return bytes(int(f'{b:08b}'[::-1], 2) for b in buf)
    if operation == 'byteswap':
        for i in range(0, len(buf) - 1, 2):
            buf[i], buf[i + 1] = buf[i + 1], buf[i]
    elif operation == 'wordswap':
        for i in range(0, len(buf) - 3, 4):
            buf[i:i + 4] = buf[i + 2:i + 4] + buf[i:i + 2]
    elif operation == 'wordbyteswap':
        for i in range(0, len(buf) - 3, 4):
            buf[i:i + 4] = buf[i:i + 4][::-1]
    return bytes(buf)


@dataclass
class Detector:
    name: str
    rules: List[SkipperRule] = field(default_factory=list)
    aliases: List[str] = field(default_factory=list)

    def keys(self) -> List[str]:
        return [_normalize(k) for k in [self.name] + self.aliases]


def _normalize(name: str) -> str:
    base = os.path.basename(name or '')
    return os.path.splitext(base)[0].strip().lower()


BUILTIN_DETECTORS = [
    Detector(
        name='nes',
        aliases=['No-Intro_NES', 'Nintendo Famicon/NES'],
        rules=[SkipperRule(start_offset=0x10, tests=[DataTest(0, bytes.fromhex('4E45531A'))], source='builtin')],
    ),
    Detector(
        name='fds',
        aliases=['No-Intro_FDS', 'Nintendo Famicon Disk System'],
        rules=[SkipperRule(start_offset=0x10, tests=[DataTest(0, bytes.fromhex('4644531A'))], source='builtin')],
    ),
    Detector(
        name='a7800',
        aliases=['No-Intro_A7800', 'Atari 7800'],
        rules=[SkipperRule(start_offset=0x80, tests=[DataTest(1, b'ATARI7800')], source='builtin')],
    ),
    Detector(
        name='lynx',
        aliases=['No-Intro_LNX', 'Atari Lynx'],
        rules=[SkipperRule(start_offset=0x40, tests=[DataTest(0, b'LYNX')], source='builtin')],
    ),
]


def _parse_test(elem: ET.Element):
    result = (elem.get('result', 'true').strip().lower() != 'false')
    tag = elem.tag.lower()
    if tag == 'data':
        return DataTest(offset=_hex_int(elem.get('offset'), 0),
                        value=bytes.fromhex(elem.get('value', '')), result=result)
    if tag in ('and', 'or', 'xor'):
        return BitTest(operation=tag, offset=_hex_int(elem.get('offset'), 0),
                       mask=bytes.fromhex(elem.get('mask', '')),
                       value=bytes.fromhex(elem.get('value', '')), result=result)
    if tag == 'file':
        raw = (elem.get('size') or '').strip()
        if raw.lower() == 'po2':
            return FileTest(size=None, power_of_two=True, result=result)
        return FileTest(size=_hex_int(raw, 0), operator=elem.get('operator', 'equal').lower(), result=result)
    raise CatalogParseError(f"Unknown detector test: {elem.tag}")


def parse_detector(content: str, source: str = '') -> Detector:
    """Parse one detector XML document"""
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise CatalogParseError(f"Invalid detector XML in {source or 'input'}: {e}")

    name_elem = root.find('name')
    name = (name_elem.text or '').strip() if name_elem is not None else ''
    aliases = [_normalize(source)] if source else []

    rules = []
    for rule_elem in root.findall('rule'):
        rule = SkipperRule(
            start_offset=_hex_int(rule_elem.get('start_offset'), 0) or 0,
            end_offset=_hex_int(rule_elem.get('end_offset'), None),
            operation=(rule_elem.get('operation') or 'none').lower(),
            tests=[_parse_test(child) for child in rule_elem],
            source=source,
        )
        rules.append(rule)
    return Detector(name=name or _normalize(source), rules=rules, aliases=aliases)


class SkipperMatcher:
    """Registry of detectors, looked up by name or detector file name"""

    def __init__(self, detectors: Optional[List[Detector]] = None, include_builtin: bool = True):
        self._detectors: Dict[str, Detector] = {}
        if include_builtin:
            for det in BUILTIN_DETECTORS:
                self.register(det)
        for det in detectors or []:
            self.register(det)

    def register(self, detector: Detector) -> None:
        for key in detector.keys():
            self._detectors[key] = detector

    def load_directory(self, folder: str) -> int:
        """Register every *.xml detector in a folder; returns how many loaded"""
        loaded = 0
        for filename in sorted(os.listdir(folder)):
            if not filename.lower().endswith('.xml'):
                continue
            path = os.path.join(folder, filename)
            try:
                with open(path, 'r', encoding='utf-8', errors='ignore') as f:
                    self.register(parse_detector(f.read(), source=filename))
                loaded += 1
            except (OSError, CatalogParseError, ValueError) as e:
                logger.warning("Skipping detector %s: %s", path, e)
        return loaded

    def get(self, skipper_name: str) -> Optional[Detector]:
        return self._detectors.get(_normalize(skipper_name))

    def get_matching_rule(self, stream: BinaryIO, skipper_name: str) -> Optional[SkipperRule]:
        """First rule of the named detector whose tests all pass on the stream"""
        detector = self.get(skipper_name)
        if detector is None:
            logger.debug("No detector named '%s'", skipper_name)
            return None
        for rule in detector.rules:
            if rule.matches(stream):
                return rule
        return None
