"""
Minimal ELF32 little-endian writer for tests.

Produces just enough of an executable for pyelftools: arbitrary sections,
a .symtab/.strtab pair, and optionally DWARF 4 .debug_info/.debug_abbrev/
.debug_line sections describing defmt log statements.
"""

import struct

SHT_PROGBITS = 1
SHT_SYMTAB = 2
SHT_STRTAB = 3
SHT_NOBITS = 8

SHN_ABS = 0xFFF1

ET_EXEC = 2
EM_ARM = 40

_EHDR_SIZE = 52
_SHDR_SIZE = 40
_SYM_SIZE = 16


def _align(buf, n=4):
    while len(buf) % n:
        buf.append(0)


def uleb(value):
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


class ElfBuilder:
    def __init__(self):
        self._sections = []
        self._symbols = []

    def add_section(self, name, data=b"", sh_type=SHT_PROGBITS, addr=0, size=None):
        """Add a section; returns its section index."""
        self._sections.append({
            "name": name,
            "type": sh_type,
            "data": bytes(data),
            "addr": addr,
            "size": size if size is not None else len(data),
            "link": 0,
            "info": 0,
            "align": 1,
            "entsize": 0,
        })
        return len(self._sections)

    def add_symbol(self, name, value, shndx):
        self._symbols.append((name, value, shndx))

    def build(self):
        sections = [dict(s) for s in self._sections]

        strtab = bytearray(b"\0")
        symtab = bytearray(_SYM_SIZE)
        for name, value, shndx in self._symbols:
            st_name = len(strtab)
            strtab += name.encode("utf-8") + b"\0"
            # STB_GLOBAL, STT_NOTYPE
            symtab += struct.pack("<IIIBBH", st_name, value, 0, 0x10, 0, shndx)

        symtab_index = len(sections) + 1
        sections.append({
            "name": ".symtab", "type": SHT_SYMTAB, "data": bytes(symtab),
            "addr": 0, "size": len(symtab), "link": symtab_index + 1,
            "info": 1, "align": 4, "entsize": _SYM_SIZE,
        })
        sections.append({
            "name": ".strtab", "type": SHT_STRTAB, "data": bytes(strtab),
            "addr": 0, "size": len(strtab), "link": 0, "info": 0,
            "align": 1, "entsize": 0,
        })
        sections.append({
            "name": ".shstrtab", "type": SHT_STRTAB, "data": b"",
            "addr": 0, "size": 0, "link": 0, "info": 0, "align": 1, "entsize": 0,
        })

        shstrtab = bytearray(b"\0")
        for s in sections:
            s["name_off"] = len(shstrtab)
            shstrtab += s["name"].encode("utf-8") + b"\0"
        sections[-1]["data"] = bytes(shstrtab)
        sections[-1]["size"] = len(shstrtab)

        out = bytearray(_EHDR_SIZE)
        for s in sections:
            _align(out)
            s["offset"] = len(out)
            if s["type"] != SHT_NOBITS:
                out += s["data"]
        _align(out)
        shoff = len(out)

        out += bytes(_SHDR_SIZE)  # SHN_UNDEF
        for s in sections:
            out += struct.pack(
                "<IIIIIIIIII",
                s["name_off"], s["type"], 0, s["addr"], s["offset"], s["size"],
                s["link"], s["info"], s["align"], s["entsize"],
            )

        ident = b"\x7fELF" + bytes([1, 1, 1, 0]) + bytes(8)
        header = ident + struct.pack(
            "<HHIIIIIHHHHHH",
            ET_EXEC, EM_ARM, 1, 0, 0, shoff, 0,
            _EHDR_SIZE, 0, 0, _SHDR_SIZE, len(sections) + 1, len(sections),
        )
        out[:_EHDR_SIZE] = header
        return bytes(out)


def defmt_elf(strings, ranges=None, versions=("1",), skip=(), extra_sections=None):
    """
    ELF with a `.defmt` section.

    strings:   {address: raw string}
    ranges:    {"info": (start, end), ...}; missing levels are empty at 0.
    versions:  version symbol names to add (raw values; quotes allowed).
    skip:      marker names to leave out.
    """
    ranges = ranges or {}
    b = ElfBuilder()
    shndx = b.add_section(".defmt", sh_type=SHT_NOBITS, size=0x1000)
    for address, name in strings.items():
        b.add_symbol(name, address, shndx)
    for level in ("error", "warn", "info", "debug", "trace"):
        start, end = ranges.get(level, (0, 0))
        for edge, value in (("start", start), ("end", end)):
            marker = f"_defmt_{level}_{edge}"
            if marker not in skip:
                b.add_symbol(marker, value, shndx)
    for version in versions:
        if version.startswith('"'):
            b.add_symbol(f'"_defmt_version_ = {version[1:]}', 0, SHN_ABS)
        else:
            b.add_symbol(f"_defmt_version_ = {version}", 0, SHN_ABS)
    for name, data in (extra_sections or {}).items():
        b.add_section(name, data)
    return b.build()


# ---------------------------------------------------------------------------
# DWARF 4
# ---------------------------------------------------------------------------

_ABBREV_CU = 1
_ABBREV_NAMESPACE = 2
_ABBREV_VARIABLE = 3


def _cstr(s):
    return s.encode("utf-8") + b"\0"


def debug_abbrev():
    return bytes([
        # compile_unit, children: name, comp_dir, stmt_list
        _ABBREV_CU, 0x11, 1,
        0x03, 0x08, 0x1B, 0x08, 0x10, 0x17, 0, 0,
        # namespace, children: name
        _ABBREV_NAMESPACE, 0x39, 1,
        0x03, 0x08, 0, 0,
        # variable: name, linkage_name, decl_file, decl_line, location
        _ABBREV_VARIABLE, 0x34, 0,
        0x03, 0x08, 0x6E, 0x08, 0x3A, 0x0B, 0x3B, 0x0B, 0x02, 0x18, 0, 0,
        0,
    ])


def namespace(name, *children):
    return ("namespace", name, children)


def variable(name, linkage_name, file_index, line, address):
    return ("variable", name, linkage_name, file_index, line, address)


def _encode_die(node):
    if node[0] == "namespace":
        _, name, children = node
        out = bytearray(uleb(_ABBREV_NAMESPACE) + _cstr(name))
        for child in children:
            out += _encode_die(child)
        out.append(0)
        return bytes(out)
    _, name, linkage, file_index, line, address = node
    expr = bytes([0x03]) + struct.pack("<I", address)  # DW_OP_addr
    return (
        uleb(_ABBREV_VARIABLE) + _cstr(name) + _cstr(linkage)
        + bytes([file_index, line]) + uleb(len(expr)) + expr
    )


def debug_info(children, cu_name="main.rs", comp_dir="/work/app"):
    body = bytearray()
    body += struct.pack("<HIB", 4, 0, 4)  # version, abbrev offset, address size
    body += uleb(_ABBREV_CU) + _cstr(cu_name) + _cstr(comp_dir) + struct.pack("<I", 0)
    for child in children:
        body += _encode_die(child)
    body.append(0)
    return struct.pack("<I", len(body)) + bytes(body)


def debug_line(include_dirs, files):
    """files: [(name, dir_index)]"""
    header = bytearray()
    header += bytes([1, 1, 1, 0xFB, 14, 13])
    header += bytes([0, 1, 1, 1, 1, 0, 0, 0, 1, 0, 0, 1])
    for d in include_dirs:
        header += _cstr(d)
    header.append(0)
    for name, dir_index in files:
        header += _cstr(name) + uleb(dir_index) + uleb(0) + uleb(0)
    header.append(0)

    rest = struct.pack("<HI", 4, len(header)) + bytes(header)
    return struct.pack("<I", len(rest)) + rest


def dwarf_sections(children, include_dirs=("src",), files=(("main.rs", 1),),
                   comp_dir="/work/app"):
    return {
        ".debug_abbrev": debug_abbrev(),
        ".debug_info": debug_info(children, comp_dir=comp_dir),
        ".debug_line": debug_line(include_dirs, files),
    }
