#
# Lossless file compression using a Huffman code
# https://en.wikipedia.org/wiki/Huffman_coding
#
# Usage:
# Compress: huffencoder -i input_file -o output_file
# Decompress: huffencoder -d -r original_file -i input_file -o output_file
#
# Compression is two-pass: the input is scanned once to count byte frequencies,
# those frequencies build the code tree, and a second pass writes the codes.
# The compressed file is the bit-packed data (most significant bit first) followed
# by one trailing byte that records how many bits of the last data byte are valid.
# No code table is stored, so decompression rebuilds the tree from the original
# frequencies, which is why the CLI needs the original file (-r) to decompress.
#

from __future__ import annotations

import argparse
import heapq
import io
import logging
import os
import sys
from abc import ABC
from collections import Counter
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Iterator, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024  # Bytes read or written per I/O call
BITS_PER_BYTE = 8
MAX_VALID_BITS = BITS_PER_BYTE  # Largest value the trailing metadata byte can hold


class MissingCodeError(KeyError):
    """Raised when encoding a symbol that has no entry in the code table."""


class DecodingError(ValueError):
    """Raised when a bit stream does not walk the code tree to a leaf."""


class BitStreamError(ValueError):
    """Raised when a compressed stream has an invalid trailing metadata byte."""


class Node(ABC):
    frequency: int


class InternalNode(Node):
    # right is None only for the wrapper around a single-symbol tree
    def __init__(self, left: Node, right: Optional[Node] = None):
        self.left = left
        self.right = right
        self.frequency = left.frequency + (right.frequency if right is not None else 0)


class Leaf(Node):
    def __init__(self, symbol: int, frequency: int):
        if symbol < 0:
            raise ValueError("Symbol must be non-negative")
        self.symbol = symbol
        self.frequency = frequency


class HeapObject():
    # Ordered by frequency, then by insertion sequence so that ties always
    # resolve the same way and the tree shape is reproducible
    def __init__(self, frequency: int, sequence: int, node: Node):
        self.frequency = frequency
        self.sequence = sequence
        self.node = node

    def __lt__(self, other: HeapObject):
        if self.frequency == other.frequency:
            return self.sequence < other.sequence
        return self.frequency < other.frequency


class BitWriter():
    def __init__(self, out: BinaryIO):
        self.out = out
        self.current_byte = 0
        self.bits_in_byte = 0
        self.bits_written = 0
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, exc_traceback):
        # Only finalize on success; a failed run leaves the stream without its
        # metadata byte so it can never be mistaken for a complete one
        if exc_type is None:
            self.close()

    def write_bit(self, b: int):
        if self.closed:
            raise ValueError("Cannot write to a closed BitWriter")
        if b not in (0, 1):
            raise ValueError(f"Got unexpected bit: {b}")

        # Push the bit onto the byte buffer, writing a full byte at a time
        self.current_byte = (self.current_byte << 1) | b
        self.bits_in_byte += 1
        self.bits_written += 1
        if self.bits_in_byte == BITS_PER_BYTE:
            self.out.write(bytes([self.current_byte]))
            self.current_byte = 0
            self.bits_in_byte = 0

    def write_code(self, code: str):
        # Codes are strings of "0" and "1", written first character first
        for digit in code:
            if digit not in "01":
                raise ValueError(f"Got unexpected code digit: {digit!r} in {code!r}")
            self.write_bit(int(digit))

    def close(self):
        if self.closed:
            return
        if self.bits_in_byte:
            # Pad the unused low-order bits with zeros
            valid_bits = self.bits_in_byte
            self.out.write(bytes([self.current_byte << (BITS_PER_BYTE - valid_bits)]))
        elif self.bits_written:
            valid_bits = BITS_PER_BYTE
        else:
            valid_bits = 0
        self.current_byte = 0
        self.bits_in_byte = 0
        # The metadata byte is always written, even on an exact byte boundary
        self.out.write(bytes([valid_bits]))
        self.closed = True


class BitReader():
    def __init__(self, input: BinaryIO):
        # The metadata byte is the last one, so the whole stream is needed up front
        raw = input.read()
        self.position = 0
        if not raw:
            self.data = b""
            self.total_bits = 0
            return

        self.data = raw[:-1]
        valid_bits = raw[-1]
        if valid_bits > MAX_VALID_BITS:
            raise BitStreamError(f"Invalid metadata byte: {valid_bits} valid bits")
        if self.data and valid_bits == 0:
            raise BitStreamError("Metadata byte claims no valid bits but data bytes are present")
        if not self.data and valid_bits != 0:
            raise BitStreamError(f"Metadata byte claims {valid_bits} valid bits but there is no data")
        self.total_bits = max(len(self.data) - 1, 0) * BITS_PER_BYTE + valid_bits

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, exc_traceback):
        self.close()

    def __iter__(self) -> Iterator[int]:
        while self.has_next():
            yield self.read_bit()

    def has_next(self) -> bool:
        return self.position < self.total_bits

    def read_bit(self) -> int:
        if not self.has_next():
            raise EOFError(f"No more bits to read after {self.total_bits} bits")
        byte_index, offset = divmod(self.position, BITS_PER_BYTE)
        self.position += 1
        return (self.data[byte_index] >> (BITS_PER_BYTE - 1 - offset)) & 1

    def close(self):
        self.position = self.total_bits


def read_symbols(input_file: BinaryIO) -> Iterator[int]:
    while (chunk := input_file.read(CHUNK_SIZE)):
        yield from chunk


def find_frequencies(input_file: BinaryIO) -> Counter:
    frequencies = Counter()
    while (chunk := input_file.read(CHUNK_SIZE)):
        frequencies.update(chunk)
    return frequencies


def build_code_tree(frequencies: Mapping[int, int]) -> Optional[Node]:
    """Build the Huffman code tree, or return None when there is nothing to encode.

    Leaves are seeded in ascending symbol order and every heap entry carries an
    insertion sequence number, so equal frequencies always pop in the same order.
    The first tree popped becomes the left child of the merged node and the
    second becomes the right child.
    """
    heap = []
    sequence = 0
    for symbol in sorted(frequencies):
        frequency = frequencies[symbol]
        if frequency < 0:
            raise ValueError(f"Negative frequency {frequency} for symbol {symbol}")
        if frequency == 0:
            continue
        heapq.heappush(heap, HeapObject(frequency, sequence, Leaf(symbol, frequency)))
        sequence += 1

    if not heap:
        return None

    # A lone leaf would get a zero-length code, so hang it off the left side of
    # a wrapper node. decode() relies on the right side being empty.
    if len(heap) == 1:
        return InternalNode(heap[0].node, None)

    while len(heap) > 1:
        x = heapq.heappop(heap)
        y = heapq.heappop(heap)
        z = HeapObject(x.frequency + y.frequency, sequence, InternalNode(x.node, y.node))
        sequence += 1
        heapq.heappush(heap, z)

    return heap[0].node


def build_code_table(code_tree: Optional[Node]) -> Dict[int, str]:
    codebook = {}
    if code_tree is None:
        return codebook

    def build_code_list(node, code):
        if isinstance(node, InternalNode):
            build_code_list(node.left, code + "0")
            if node.right is not None:
                build_code_list(node.right, code + "1")
        elif isinstance(node, Leaf):
            codebook[node.symbol] = code

    build_code_list(code_tree, "")
    return codebook


def encode(symbols: Iterable[int], codebook: Mapping[int, str], bit_writer: BitWriter):
    for symbol in symbols:
        code = codebook.get(symbol)
        if code is None:
            raise MissingCodeError(symbol)
        bit_writer.write_code(code)
    bit_writer.close()


def decode(code_tree: Optional[Node], bit_reader: BitReader) -> Iterator[int]:
    if code_tree is None:
        # Nothing was encoded, so there must be nothing to decode
        if bit_reader.has_next():
            raise DecodingError("Got a non-empty bit stream but no code tree")
        return
    if not isinstance(code_tree, InternalNode):
        raise DecodingError("Code tree root must be an internal node")

    node = code_tree
    for bit in bit_reader:
        child = node.right if bit else node.left
        if child is None:
            raise DecodingError(f"Bit {bit_reader.position - 1} leads to a missing branch of the code tree")
        if isinstance(child, Leaf):
            yield child.symbol
            node = code_tree
        else:
            node = child

    if node is not code_tree:
        raise DecodingError("Bit stream ended in the middle of a code")


@contextmanager
def _output_file(output_file_path: str, input_file_path: str):
    # Opening the input for writing would truncate it before it is fully read,
    # and the cleanup below would then delete it
    if os.path.exists(output_file_path) and os.path.samefile(input_file_path, output_file_path):
        raise ValueError(f"Output file {output_file_path} is the same file as input {input_file_path}")

    # Don't leave a half-written output file behind when a run fails
    output_file = open(output_file_path, "wb")
    try:
        yield output_file
    except BaseException:
        output_file.close()
        Path(output_file_path).unlink(missing_ok=True)
        raise
    finally:
        output_file.close()


def load_code_tree(reference_file_path: str) -> Optional[Node]:
    with open(reference_file_path, "rb") as reference_file:
        return build_code_tree(find_frequencies(reference_file))


def compress(input_file_path: str, output_file_path: str) -> Optional[Node]:
    with open(input_file_path, "rb") as input_file:
        frequencies = find_frequencies(input_file)
        code_tree = build_code_tree(frequencies)
        codebook = build_code_table(code_tree)
        logger.debug("Built codes for %d distinct symbols from %s", len(codebook), input_file_path)

        # Second pass over the same input to write the codes
        input_file.seek(0)
        with _output_file(output_file_path, input_file_path) as output_file, BitWriter(output_file) as bit_writer:
            encode(read_symbols(input_file), codebook, bit_writer)

    logger.info(
        "Successfully compressed %s to %s (%d -> %d bytes)",
        input_file_path,
        output_file_path,
        os.path.getsize(input_file_path),
        os.path.getsize(output_file_path),
    )
    return code_tree


def decompress(input_file_path: str, output_file_path: str, code_tree: Optional[Node]):
    with open(input_file_path, "rb") as input_file, BitReader(input_file) as bit_reader:
        logger.debug("Decoding %d bits from %s", bit_reader.total_bits, input_file_path)
        with _output_file(output_file_path, input_file_path) as output_file:
            buffer = bytearray()
            for symbol in decode(code_tree, bit_reader):
                buffer.append(symbol)
                if len(buffer) >= CHUNK_SIZE:
                    output_file.write(buffer)
                    buffer.clear()
            output_file.write(buffer)

    logger.info("Successfully decompressed %s to %s", input_file_path, output_file_path)


def compress_bytes(data: bytes) -> Tuple[bytes, Optional[Node]]:
    code_tree = build_code_tree(Counter(data))
    output = io.BytesIO()
    encode(data, build_code_table(code_tree), BitWriter(output))
    return output.getvalue(), code_tree


def decompress_bytes(data: bytes, code_tree: Optional[Node]) -> bytes:
    return bytes(decode(code_tree, BitReader(io.BytesIO(data))))


def run(input_file_path: str, output_file_path: str, decompress_mode: bool=False,
        reference_file_path: Optional[str]=None):
    if decompress_mode:
        if reference_file_path is None:
            raise ValueError("Decompression needs the original file to rebuild the code tree")
        decompress(input_file_path, output_file_path, load_code_tree(reference_file_path))
    else:
        compress(input_file_path, output_file_path)


def main(argv=None) -> int:
    arg_parser = argparse.ArgumentParser(prog="huffencoder")
    arg_parser.add_argument("-i", dest="input_file_path", help="The path of the file to compress or decompress.", required=True)
    arg_parser.add_argument("-o", dest="output_file_path", help="The output file path.", required=True)
    arg_parser.add_argument("-d", dest="decompress", action="store_true", help="Flag to run in decompress mode; otherwise run in compress mode")
    arg_parser.add_argument("-r", "--reference", dest="reference_file_path", help="The original uncompressed file, used to rebuild the code tree when decompressing.")
    arg_parser.add_argument("-v", "--verbose", action="store_true", help="Log debug details.")
    args = arg_parser.parse_args(argv)

    if args.decompress and args.reference_file_path is None:
        arg_parser.error("-d requires -r/--reference to rebuild the code tree")

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger.setLevel(level)

    try:
        run(args.input_file_path, args.output_file_path, args.decompress, args.reference_file_path)
    except (OSError, ValueError, KeyError) as e:
        logger.error("%s failed: %s", "Decompression" if args.decompress else "Compression", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
