from io import BytesIO

import pytest

from huffencoder import BitReader, BitStreamError, BitWriter


def write_bits(bits):
    out = BytesIO()
    bit_writer = BitWriter(out)
    for bit in bits:
        bit_writer.write_bit(bit)
    bit_writer.close()
    return out.getvalue()


def test_thirteen_bits_use_two_data_bytes_and_metadata_five():
    bits = [1] * 8 + [1, 0, 1, 0, 1]
    packed = write_bits(bits)
    assert packed == bytes([0xFF, 0b10101000, 5])

    bit_reader = BitReader(BytesIO(packed))
    assert bit_reader.total_bits == 13
    assert list(bit_reader) == bits
    assert not bit_reader.has_next()
    with pytest.raises(EOFError):
        bit_reader.read_bit()


def test_exact_byte_boundary_still_gets_metadata_byte():
    packed = write_bits([0, 1] * 8)
    assert packed == bytes([0b01010101, 0b01010101, 8])
    assert list(BitReader(BytesIO(packed))) == [0, 1] * 8


def test_empty_stream():
    packed = write_bits([])
    assert packed == b"\x00"
    for source in (packed, b""):
        bit_reader = BitReader(BytesIO(source))
        assert not bit_reader.has_next()
        assert list(bit_reader) == []


def test_bits_are_read_most_significant_first():
    bit_reader = BitReader(BytesIO(bytes([0b10000000, 1])))
    assert bit_reader.read_bit() == 1
    assert not bit_reader.has_next()


def test_write_code_writes_characters_in_order():
    out = BytesIO()
    with BitWriter(out) as bit_writer:
        bit_writer.write_code("110")
        bit_writer.write_code("01")
        assert bit_writer.bits_written == 5
    assert out.getvalue() == bytes([0b11001000, 5])


@pytest.mark.parametrize("bit", [2, -1, "1", None])
def test_write_bit_rejects_non_bits(bit):
    with pytest.raises(ValueError):
        BitWriter(BytesIO()).write_bit(bit)


def test_write_code_rejects_other_characters():
    with pytest.raises(ValueError):
        BitWriter(BytesIO()).write_code("012")


def test_close_is_idempotent_and_final():
    out = BytesIO()
    bit_writer = BitWriter(out)
    bit_writer.write_bit(1)
    bit_writer.close()
    bit_writer.close()
    assert out.getvalue() == bytes([0b10000000, 1])
    with pytest.raises(ValueError):
        bit_writer.write_bit(0)


def test_failed_write_leaves_stream_without_metadata():
    out = BytesIO()
    with pytest.raises(RuntimeError):
        with BitWriter(out) as bit_writer:
            bit_writer.write_code("1" * 8)
            bit_writer.write_code("101")
            raise RuntimeError("boom")
    assert out.getvalue() == b"\xff"


@pytest.mark.parametrize("packed", [b"\xff\x09", b"\xff\x00", b"\x03"])
def test_reader_rejects_inconsistent_metadata(packed):
    with pytest.raises(BitStreamError):
        BitReader(BytesIO(packed))


def test_closed_reader_has_no_more_bits():
    with BitReader(BytesIO(bytes([0xFF, 8]))) as bit_reader:
        bit_reader.read_bit()
    assert not bit_reader.has_next()
