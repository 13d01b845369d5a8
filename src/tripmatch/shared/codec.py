"""
Field-element codec for the matching circuit.

The circuit reads its inputs as a flat, fixed-order sequence of field
elements. Field order and widths below are a contract with the deployed
circuit: change them only together with LAYOUT_VERSION.

Trip layout v1 (55 fields, 209 bytes as a packed memory image):

    waypoints       u64 x 20   H3 cells, unused slots = WAYPOINT_SENTINEL
    waypoint_count  u8
    start_date      i64        Unix seconds
    end_date        i64        Unix seconds
    interests       bool x 32  interests[i] == Interest(i)

Profile layout v1 (variable, bounded by MAX_PROFILE_CIPHERTEXT):

    interests       u32        bitmask, bit i == Interest(i)
    name_len        u16        UTF-8 byte length, 0 == absent
    name            u64 x ceil(name_len / 8), little-endian byte chunks
    bio_len         u16
    bio             u64 x ceil(bio_len / 8)

Every field element is a non-negative integer below 2**64; signed fields
travel as two's complement.
"""
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np

from tripmatch.shared.errors import InvalidGeometry, PayloadTooLarge, ProtocolMismatch
from tripmatch.shared.geo import cell_from_int, is_valid_cell
from tripmatch.shared.protocol import (
    MAX_INTERESTS,
    MAX_PROFILE_CIPHERTEXT,
    MAX_WAYPOINTS,
    ProfileInterests,
    TripPayload,
    to_interest_set,
)

LAYOUT_VERSION = 1

# 0 is never a valid H3 index
WAYPOINT_SENTINEL = 0

# Every field element occupies one 64-bit word on the encrypted wire
WORD_BYTES = 8
AEAD_TAG_BYTES = 16

FIELD_MODULUS = 1 << 64


class FieldKind(Enum):
    UINT = "uint"
    INT = "int"
    BOOL = "bool"


@dataclass(frozen=True)
class FieldSpec:
    """One named slot (or fixed-size array of slots) of a layout."""
    name: str
    kind: FieldKind
    bits: int
    count: int = 1

    def check(self, value: int, position: int) -> int:
        if isinstance(value, (bool, np.bool_)) or not isinstance(value, (int, np.integer)):
            raise ProtocolMismatch(
                f"Field {self.name}[{position}] is not an integer: {value!r}"
            )
        value = int(value)
        limit = 2 if self.kind is FieldKind.BOOL else 1 << self.bits
        if not 0 <= value < limit:
            raise ProtocolMismatch(
                f"Field {self.name}[{position}] = {value} exceeds {self.bits}-bit width"
            )
        return value


TRIP_LAYOUT: Tuple[FieldSpec, ...] = (
    FieldSpec("waypoints", FieldKind.UINT, 64, MAX_WAYPOINTS),
    FieldSpec("waypoint_count", FieldKind.UINT, 8),
    FieldSpec("start_date", FieldKind.INT, 64),
    FieldSpec("end_date", FieldKind.INT, 64),
    FieldSpec("interests", FieldKind.BOOL, 1, MAX_INTERESTS),
)

TRIP_FIELD_COUNT = sum(spec.count for spec in TRIP_LAYOUT)

# Packed little-endian memory image of the circuit's TripData struct
TRIP_DTYPE = np.dtype([
    ("waypoints", "<u8", (MAX_WAYPOINTS,)),
    ("waypoint_count", "u1"),
    ("start_date", "<i8"),
    ("end_date", "<i8"),
    ("interests", "u1", (MAX_INTERESTS,)),
])

INTERESTS_SPEC = FieldSpec("interests", FieldKind.UINT, MAX_INTERESTS)
TEXT_LEN_SPEC = FieldSpec("text_len", FieldKind.UINT, 16)
TEXT_CHUNK_SPEC = FieldSpec("text", FieldKind.UINT, 64)


def to_signed(value: int) -> int:
    return value - FIELD_MODULUS if value >= FIELD_MODULUS // 2 else value


def from_signed(value: int) -> int:
    if not -(FIELD_MODULUS // 2) <= value < FIELD_MODULUS // 2:
        raise ValueError(f"{value} does not fit in i64")
    return value % FIELD_MODULUS


def ciphertext_size(field_count: int) -> int:
    """Bytes an encrypted payload of `field_count` elements occupies."""
    return field_count * WORD_BYTES + AEAD_TAG_BYTES


def fields_to_bytes(fields: Sequence[int]) -> bytes:
    """Serialize field elements as 64-bit little-endian words."""
    for i, value in enumerate(fields):
        TEXT_CHUNK_SPEC.check(value, i)
    return np.asarray([int(v) for v in fields], dtype="<u8").tobytes()


def bytes_to_fields(data: bytes) -> List[int]:
    """Inverse of fields_to_bytes."""
    if len(data) % WORD_BYTES:
        raise ProtocolMismatch(
            f"Payload of {len(data)} bytes is not a whole number of {WORD_BYTES}-byte words"
        )
    return [int(v) for v in np.frombuffer(data, dtype="<u8")]


def _pack_text(text: Optional[str]) -> List[int]:
    raw = text.encode("utf-8") if text else b""
    if len(raw) >= 1 << TEXT_LEN_SPEC.bits:
        raise PayloadTooLarge(f"Text field of {len(raw)} bytes exceeds u16 length")
    padded = raw + b"\x00" * (-len(raw) % WORD_BYTES)
    chunks = [int.from_bytes(padded[i:i + WORD_BYTES], "little")
              for i in range(0, len(padded), WORD_BYTES)]
    return [len(raw)] + chunks


def _unpack_text(fields: Sequence[int], pos: int) -> Tuple[Optional[str], int]:
    if pos >= len(fields):
        raise ProtocolMismatch("Profile payload truncated before text length")
    length = TEXT_LEN_SPEC.check(fields[pos], pos)
    n_chunks = -(-length // WORD_BYTES)
    chunks = fields[pos + 1:pos + 1 + n_chunks]
    if len(chunks) != n_chunks:
        raise ProtocolMismatch(
            f"Profile text declares {length} bytes but only {len(chunks)} chunks follow"
        )
    raw = b"".join(
        TEXT_CHUNK_SPEC.check(c, pos + 1 + i).to_bytes(WORD_BYTES, "little")
        for i, c in enumerate(chunks)
    )
    if any(raw[length:]):
        raise ProtocolMismatch("Non-zero padding after profile text")
    if length == 0:
        return None, pos + 1
    try:
        return raw[:length].decode("utf-8"), pos + 1 + n_chunks
    except UnicodeDecodeError as e:
        raise ProtocolMismatch(f"Profile text is not valid UTF-8: {e}") from None


class PayloadCodec:
    """
    Encoder/decoder between domain objects and circuit field elements.

    Pure and stateless; one instance can serve any number of threads.
    Any deviation from the layout raises ProtocolMismatch instead of
    producing a plausible but wrong record.
    """

    version = LAYOUT_VERSION

    def encode_trip(self, trip: TripPayload) -> List[int]:
        """
        Encode a trip into exactly TRIP_FIELD_COUNT field elements.

        Args:
            trip: Trip payload with at most MAX_WAYPOINTS waypoints

        Returns:
            List of field elements in layout order
        """
        if trip.waypoint_count > MAX_WAYPOINTS:
            raise ProtocolMismatch(f"{trip.waypoint_count} waypoints exceed circuit capacity")

        fields: List[int] = []
        for cell in trip.waypoints:
            if cell.index == WAYPOINT_SENTINEL:
                raise ProtocolMismatch("Waypoint collides with the padding sentinel")
            if not is_valid_cell(cell.index):
                raise ProtocolMismatch(f"Waypoint is not a valid H3 cell: {cell.index!r}")
            fields.append(cell.index)
        fields.extend([WAYPOINT_SENTINEL] * (MAX_WAYPOINTS - trip.waypoint_count))

        fields.append(trip.waypoint_count)
        try:
            fields.append(from_signed(trip.start_date))
            fields.append(from_signed(trip.end_date))
        except ValueError as e:
            raise ProtocolMismatch(str(e)) from None

        fields.extend(1 if i in trip.interests else 0 for i in range(MAX_INTERESTS))

        self._check_layout(fields)
        return fields

    def decode_trip(self, fields: Sequence[int]) -> TripPayload:
        """
        Decode TRIP_FIELD_COUNT field elements back into a trip.

        The waypoint count field is authoritative: slots below it must hold
        live cells, slots at or above it must hold the sentinel.
        """
        values = self._check_layout(fields)

        count = values[MAX_WAYPOINTS]
        if count > MAX_WAYPOINTS:
            raise ProtocolMismatch(f"Waypoint count {count} exceeds capacity {MAX_WAYPOINTS}")

        waypoints = []
        for i in range(MAX_WAYPOINTS):
            slot = values[i]
            if i < count:
                if slot == WAYPOINT_SENTINEL:
                    raise ProtocolMismatch(f"Sentinel inside live waypoint range at slot {i}")
                try:
                    waypoints.append(cell_from_int(slot))
                except InvalidGeometry as e:
                    raise ProtocolMismatch(f"Waypoint slot {i}: {e}") from None
            elif slot != WAYPOINT_SENTINEL:
                raise ProtocolMismatch(f"Live value in padding slot {i}")

        start_date = to_signed(values[MAX_WAYPOINTS + 1])
        end_date = to_signed(values[MAX_WAYPOINTS + 2])
        flags = values[MAX_WAYPOINTS + 3:]
        interests = [i for i, flag in enumerate(flags) if flag]

        try:
            return TripPayload(
                waypoints=tuple(waypoints),
                start_date=start_date,
                end_date=end_date,
                interests=to_interest_set(interests),
            )
        except ValueError as e:
            raise ProtocolMismatch(f"Decoded trip is invalid: {e}") from None

    def encode_profile(self, profile: ProfileInterests) -> List[int]:
        """
        Encode profile interests and free text.

        Raises:
            PayloadTooLarge: if the encrypted form would exceed
                MAX_PROFILE_CIPHERTEXT bytes
        """
        mask = 0
        for interest in profile.interests:
            mask |= 1 << int(interest)

        fields = [mask]
        fields.extend(_pack_text(profile.display_name))
        fields.extend(_pack_text(profile.bio))

        size = ciphertext_size(len(fields))
        if size > MAX_PROFILE_CIPHERTEXT:
            raise PayloadTooLarge(
                f"Encrypted profile would be {size} bytes (max {MAX_PROFILE_CIPHERTEXT}). "
                f"Shorten the display name or bio."
            )
        return fields

    def decode_profile(self, fields: Sequence[int]) -> ProfileInterests:
        if not fields:
            raise ProtocolMismatch("Empty profile payload")
        if ciphertext_size(len(fields)) > MAX_PROFILE_CIPHERTEXT:
            raise ProtocolMismatch(f"Profile payload of {len(fields)} fields exceeds ceiling")

        mask = INTERESTS_SPEC.check(fields[0], 0)
        interests = [i for i in range(MAX_INTERESTS) if mask >> i & 1]

        display_name, pos = _unpack_text(fields, 1)
        bio, pos = _unpack_text(fields, pos)
        if pos != len(fields):
            raise ProtocolMismatch(
                f"Profile payload has {len(fields) - pos} trailing fields"
            )
        return ProfileInterests(interests=interests, display_name=display_name, bio=bio)

    def pack_trip(self, fields: Sequence[int]) -> bytes:
        """Pack trip field elements into the circuit's 209-byte memory image."""
        values = self._check_layout(fields)
        record = np.zeros(1, dtype=TRIP_DTYPE)
        record["waypoints"][0] = values[:MAX_WAYPOINTS]
        record["waypoint_count"][0] = values[MAX_WAYPOINTS]
        record["start_date"][0] = to_signed(values[MAX_WAYPOINTS + 1])
        record["end_date"][0] = to_signed(values[MAX_WAYPOINTS + 2])
        record["interests"][0] = values[MAX_WAYPOINTS + 3:]
        return record.tobytes()

    def unpack_trip(self, data: bytes) -> List[int]:
        if len(data) != TRIP_DTYPE.itemsize:
            raise ProtocolMismatch(
                f"Trip image is {len(data)} bytes, expected {TRIP_DTYPE.itemsize}"
            )
        record = np.frombuffer(data, dtype=TRIP_DTYPE)[0]
        fields = [int(v) for v in record["waypoints"]]
        fields.append(int(record["waypoint_count"]))
        fields.append(from_signed(int(record["start_date"])))
        fields.append(from_signed(int(record["end_date"])))
        fields.extend(int(v) for v in record["interests"])
        self._check_layout(fields)
        return fields

    @staticmethod
    def _check_layout(fields: Sequence[int]) -> List[int]:
        if len(fields) != TRIP_FIELD_COUNT:
            raise ProtocolMismatch(
                f"Trip layout v{LAYOUT_VERSION} expects {TRIP_FIELD_COUNT} fields, got {len(fields)}"
            )
        values = []
        pos = 0
        for spec in TRIP_LAYOUT:
            for i in range(spec.count):
                values.append(spec.check(fields[pos], i))
                pos += 1
        return values
