#!/usr/bin/env python3
r"""
hack_asm.py  –  Assembler for the Hack 16-bit computer
=======================================================

Usage:
    python3 hack_asm.py input.asm [-o output.hack] [-l listing.lst]

Output:
    Hack file      (.hack)      one 16-character 0/1 line per instruction
    Listing file   (.lst)       optional symbol table and annotated source

Features:
    Labels          (LOOP)   define; @LOOP  reference (resolved in two passes)
    Variables       @name    any symbol that is not a label, allocated from 16
    Predefined      SP LCL ARG THIS THAT  R0..R15  SCREEN KBD
    Comments        // to end of line

Instruction syntax recap:
    A-instruction:  @value        (0..32767)
                    @symbol
    C-instruction:  dest=comp;jump    (dest= and ;jump are both optional)
        dest        M D MD A AM AD AMD
        comp        0 1 -1 D A !D !A -D -A D+1 A+1 D-1 A-1
                    D+A D-A A-D D&A D|A   (A may be replaced by M)
        jump        JGT JEQ JGE JLT JNE JLE JMP
"""

import re
import sys
import os
import argparse
import tempfile
from dataclasses import dataclass
from enum import IntEnum

# ── Symbol / code tables ──────────────────────────────────────────────────────

PREDEFINED_SYMBOLS = {
    'SP':     0,
    'LCL':    1,
    'ARG':    2,
    'THIS':   3,
    'THAT':   4,
    **{f'R{i}': i for i in range(16)},
    'SCREEN': 16384,
    'KBD':    24576,
}

VARIABLE_BASE = 16       # first RAM address handed out to variables
MAX_ADDRESS   = 0x7FFF   # largest value an A-instruction can load
ROM_SIZE      = 0x8000   # instruction memory, in words

# Each entry: (a_bit, function bits)
#   a_bit selects the ALU's second operand: 0 = A register, 1 = M (RAM[A])
COMPUTATIONS = {
    '0':   ('0', '101010'),
    '1':   ('0', '111111'),
    '-1':  ('0', '111010'),
    'D':   ('0', '001100'),
    'A':   ('0', '110000'),
    'M':   ('1', '110000'),
    '!D':  ('0', '001101'),
    '!A':  ('0', '110001'),
    '!M':  ('1', '110001'),
    '-D':  ('0', '001111'),
    '-A':  ('0', '110011'),
    '-M':  ('1', '110011'),
    'D+1': ('0', '011111'),
    'A+1': ('0', '110111'),
    'M+1': ('1', '110111'),
    'D-1': ('0', '001110'),
    'A-1': ('0', '110010'),
    'M-1': ('1', '110010'),
    'D+A': ('0', '000010'),
    'D+M': ('1', '000010'),
    'D-A': ('0', '010011'),
    'D-M': ('1', '010011'),
    'A-D': ('0', '000111'),
    'M-D': ('1', '000111'),
    'D&A': ('0', '000000'),
    'D&M': ('1', '000000'),
    'D|A': ('0', '010101'),
    'D|M': ('1', '010101'),
}


class Dest(IntEnum):
    """Write mask; bit 2 = A, bit 1 = D, bit 0 = M."""
    NULL = 0b000
    M    = 0b001
    D    = 0b010
    MD   = 0b011
    A    = 0b100
    AM   = 0b101
    AD   = 0b110
    AMD  = 0b111


class Jump(IntEnum):
    NULL = 0b000
    JGT  = 0b001
    JEQ  = 0b010
    JGE  = 0b011
    JLT  = 0b100
    JNE  = 0b101
    JLE  = 0b110
    JMP  = 0b111


# Mnemonics accepted in source; NULL is only ever implied by omission.
DESTS = {d.name: d for d in Dest if d is not Dest.NULL}
JUMPS = {j.name: j for j in Jump if j is not Jump.NULL}

# ── Error / warning helpers ───────────────────────────────────────────────────

def _location(filename, lineno):
    loc = ''
    if filename:
        loc = f'{filename}'
    if lineno is not None:
        loc += f':{lineno}'
    return loc


class AsmError(Exception):
    def __init__(self, msg, filename=None, lineno=None):
        super().__init__(msg)
        self.msg      = msg
        self.filename = filename
        self.lineno   = lineno
    def __str__(self):
        loc = _location(self.filename, self.lineno)
        return f'Error ({loc}): {self.msg}' if loc else f'Error: {self.msg}'


class ParseError(AsmError):
    """A source line that is not a valid instruction."""
    def __init__(self, msg, token, text, filename=None, lineno=None):
        super().__init__(msg, filename, lineno)
        self.token = token
        self.text  = text
    def __str__(self):
        return f'{super().__str__()}\n    {self.text}'


def warn(msg, filename=None, lineno=None):
    """Print a warning to stderr and return the formatted text."""
    loc = _location(filename, lineno)
    w = f'Warning ({loc}): {msg}' if loc else f'Warning: {msg}'
    print(w, file=sys.stderr)
    return w

# ── Instructions ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Label:
    name: str


@dataclass(frozen=True)
class AddressImmediate:
    value: int


@dataclass(frozen=True)
class AddressSymbolic:
    name: str


@dataclass(frozen=True)
class Compute:
    comp: str
    dest: Dest = Dest.NULL
    jump: Jump = Jump.NULL


class SourceLine:
    __slots__ = ('filename', 'lineno', 'instr', 'raw')
    def __init__(self, filename, lineno, instr, raw):
        self.filename = filename
        self.lineno   = lineno
        self.instr    = instr    # Label / AddressImmediate / AddressSymbolic / Compute
        self.raw      = raw      # original text, comment included

# ── Line parser ───────────────────────────────────────────────────────────────

_DECIMAL = re.compile(r'\+?[0-9]+')

def strip_comment(line):
    """Remove a // comment and surrounding whitespace."""
    return line.split('//', 1)[0].strip()


def parse_line(line, filename=None, lineno=None):
    """
    Classify one raw source line.

    Returns None for blank / comment-only lines, otherwise one of Label,
    AddressImmediate, AddressSymbolic or Compute.  Raises ParseError for a
    malformed compute instruction.
    """
    s = strip_comment(line)
    if not s:
        return None

    if s.startswith('(') and s.endswith(')'):
        return Label(s[1:-1])

    if s.startswith('@'):
        operand = s[1:]
        if _DECIMAL.fullmatch(operand) and int(operand) <= 0xFFFF:
            return AddressImmediate(int(operand))
        return AddressSymbolic(operand)

    def fail(msg, token):
        return ParseError(msg, token, s, filename, lineno)

    parts = s.split('=')
    if len(parts) > 2:
        raise fail("more than one '=' in instruction", s)
    if len(parts) == 2:
        dest_tok, rest = parts
        if dest_tok not in DESTS:
            raise fail(f"unknown destination '{dest_tok}'", dest_tok)
        dest = DESTS[dest_tok]
    else:
        rest, dest = s, Dest.NULL

    parts = rest.split(';')
    if len(parts) > 2:
        raise fail("more than one ';' in instruction", rest)
    comp = parts[0]
    jump = Jump.NULL
    if len(parts) == 2:
        jump_tok = parts[1]
        if jump_tok not in JUMPS:
            raise fail(f"unknown jump '{jump_tok}'", jump_tok)
        jump = JUMPS[jump_tok]

    if comp not in COMPUTATIONS:
        raise fail(f"unknown computation '{comp}'", comp)
    return Compute(comp, dest, jump)


def parse_source(lines, filename='<string>'):
    """Parse every line; the first ParseError aborts the whole source."""
    out = []
    for lineno, raw in enumerate(lines, 1):
        raw = raw.rstrip('\r\n')
        instr = parse_line(raw, filename, lineno)
        if instr is not None:
            out.append(SourceLine(filename, lineno, instr, raw))
    return out

# ── Symbol table ──────────────────────────────────────────────────────────────

class SymbolTable:
    """
    Per-run symbol table.

    Labels (seeded with the predefined symbols) are fixed once pass 1 is
    done; variables are allocated on first reference during pass 2.
    """

    def __init__(self):
        self.labels        = dict(PREDEFINED_SYMBOLS)
        self.variables     = {}
        self.next_variable = VARIABLE_BASE
        self.warnings      = []

    def add_label(self, name, address):
        self.labels[name] = address

    def label(self, name):
        return self.labels.get(name)

    def variable(self, name):
        if name not in self.variables:
            self.variables[name] = self.next_variable
            self.next_variable += 1
        return self.variables[name]

    def resolve(self, name):
        address = self.label(name)
        if address is None:
            address = self.variable(name)
        return address

# ── Pass 1: collect labels ────────────────────────────────────────────────────

def pass1(source_lines):
    """First pass: bind every label to the address of the next instruction."""
    symbols  = SymbolTable()
    declared = set()
    pc       = 0

    for sl in source_lines:
        if isinstance(sl.instr, Label):
            name = sl.instr.name
            if name in declared:
                symbols.warnings.append(warn(
                    f"Label '{name}' redefined; using address {pc}",
                    sl.filename, sl.lineno))
            declared.add(name)
            symbols.add_label(name, pc)
        else:
            pc += 1

    if pc > ROM_SIZE:
        symbols.warnings.append(warn(
            f'Program is {pc} instructions long; instruction memory holds {ROM_SIZE}'))
    return symbols

# ── Encoders ──────────────────────────────────────────────────────────────────

def encode_address(value):
    if value < 0 or value > MAX_ADDRESS:
        raise AsmError(f'Address {value} out of range (0..{MAX_ADDRESS})')
    return f'{value:016b}'


def encode_compute(comp, dest=Dest.NULL, jump=Jump.NULL):
    """111 a cccccc ddd jjj"""
    a_bit, bits = COMPUTATIONS[comp]
    return f'111{a_bit}{bits}{int(dest):03b}{int(jump):03b}'


def encode(instr, symbols):
    """Encode one instruction; labels produce None."""
    if isinstance(instr, Label):
        return None
    if isinstance(instr, AddressImmediate):
        return encode_address(instr.value)
    if isinstance(instr, AddressSymbolic):
        return encode_address(symbols.resolve(instr.name))
    if isinstance(instr, Compute):
        return encode_compute(instr.comp, instr.dest, instr.jump)
    raise AsmError(f'Internal: cannot encode {instr!r}')

# ── Pass 2: resolve and encode ────────────────────────────────────────────────

def pass2(source_lines, symbols):
    """
    Second pass: encode everything in source order.
    Returns (words, listing) where listing is [(address, word or None, SourceLine)].
    """
    words   = []
    listing = []

    for sl in source_lines:
        try:
            word = encode(sl.instr, symbols)
        except AsmError as e:
            raise AsmError(e.msg, sl.filename, sl.lineno) from e
        listing.append((len(words), word, sl))
        if word is not None:
            words.append(word)

    return words, listing

# ── Driver ────────────────────────────────────────────────────────────────────

def assemble(lines, filename='<string>'):
    """Assemble an iterable of source lines. Returns (words, symbols, listing)."""
    source_lines = parse_source(lines, filename)
    symbols = pass1(source_lines)
    words, listing = pass2(source_lines, symbols)
    return words, symbols, listing


def read_source(path):
    try:
        with open(path, 'r', encoding='utf-8') as fh:
            return fh.readlines()
    except OSError as e:
        raise AsmError(f"Cannot open '{path}': {e}") from e
    except UnicodeDecodeError as e:
        raise AsmError(f"Cannot read '{path}': {e}") from e


def assemble_file(in_path, out_path, listing_path=None):
    """
    Assemble in_path into out_path. Returns (word count, symbols).

    The .hack file and the listing are committed together: if either cannot
    be written, neither replaces what was on disk before.
    """
    words, symbols, listing = assemble(read_source(in_path), in_path)
    outputs = [(format_hack(words), out_path)]
    if listing_path:
        outputs.append((format_listing(listing, symbols, in_path), listing_path))
    write_files(outputs)
    return len(words), symbols


def default_output_path(in_path):
    base = in_path[:-len('.asm')] if in_path.endswith('.asm') else in_path
    return base + '.hack'

# ── Output files ──────────────────────────────────────────────────────────────

def _umask():
    mask = os.umask(0)
    os.umask(mask)
    return mask


def _stage(text, out_path):
    """Write text to a temporary file beside out_path and return its path."""
    directory = os.path.dirname(os.path.abspath(out_path))
    fd, tmp_path = tempfile.mkstemp(dir=directory, suffix='.tmp')
    try:
        fh = os.fdopen(fd, 'w', encoding='utf-8')
    except BaseException:
        os.close(fd)
        os.unlink(tmp_path)
        raise
    try:
        with fh:
            fh.write(text)
        # mkstemp creates 0600; give the result the mode open() would have
        os.chmod(tmp_path, 0o666 & ~_umask())
    except BaseException:
        os.unlink(tmp_path)
        raise
    return tmp_path


def write_files(outputs):
    """
    Write [(text, path), ...] so that either every file is replaced or none is.

    Each file is staged next to its destination and only renamed into place
    once all of them have been written.
    """
    staged = []
    try:
        for text, path in outputs:
            staged.append((_stage(text, path), path))
    except BaseException:
        for tmp_path, _ in staged:
            os.unlink(tmp_path)
        raise
    for tmp_path, path in staged:
        os.replace(tmp_path, path)

# ── Hack writer ───────────────────────────────────────────────────────────────

def format_hack(words):
    return ''.join(word + '\n' for word in words)


def write_hack(words, out_path):
    """Write one word per line, replacing out_path atomically."""
    write_files([(format_hack(words), out_path)])

# ── Listing writer ────────────────────────────────────────────────────────────

def format_listing(listing, symbols, src_path):
    """Render the annotated listing: symbol tables, then one row per source line."""
    lines = []
    lines.append('// Hack Assembler listing')
    lines.append(f'// Source: {src_path}')
    lines.append('')

    for title, table in (('Labels', symbols.labels), ('Variables', symbols.variables)):
        if table:
            lines.append(f'// {title}:')
            for name, val in sorted(table.items(), key=lambda kv: (kv[1], kv[0])):
                lines.append(f'//   {name:<24} = {val}')
            lines.append('')

    lines.append(f'{"Addr":>6}  {"Word":<16}  Source')
    lines.append('-' * 72)

    for addr, word, sl in listing:
        lines.append(f'  {addr:>4}  {word or "":<16}  {sl.raw}')

    return '\n'.join(lines) + '\n'


def write_listing(listing, symbols, out_path, src_path):
    """Write annotated listing file."""
    write_files([(format_listing(listing, symbols, src_path), out_path)])


# ── Main ──────────────────────────────────────────────────────────────────────

def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Hack 16-bit computer assembler',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__)
    parser.add_argument('input',           help='Assembly source file')
    parser.add_argument('-o', '--output',  help='Output hack file (default: <input>.hack)')
    parser.add_argument('-l', '--listing', help='Listing file (default: none)')
    args = parser.parse_args(argv)

    out_path = args.output or default_output_path(args.input)

    try:
        count, symbols = assemble_file(args.input, out_path, args.listing)
        print(f'Wrote {count} instruction(s) to {out_path}')
        if args.listing:
            print(f'Wrote listing to {args.listing}')
        if symbols.warnings:
            print(f'{len(symbols.warnings)} warning(s).', file=sys.stderr)
    except AsmError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print(f'Error: {e}', file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
