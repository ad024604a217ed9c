"""Tests for rbuild.decoder."""

from __future__ import annotations

import io

import pytest

from rbuild.decoder import Decoder, convert
from rbuild.distro import DistroContext
from rbuild.errors import DecodeError, ScriptError, VarNotFoundError
from rbuild.overrides import OverrideOpts

FEDORA = DistroContext(id="fedora", arch="amd64")
NO_LANG = OverrideOpts(languages=())


def decoder(sh, src: str, info: DistroContext = FEDORA) -> Decoder:
    return Decoder(info, sh(src), NO_LANG)


def test_decode_vars_reads_every_field(sh) -> None:
    dec = decoder(sh, """
        name=foo
        version=1.2
        release=3
        epoch=1
        desc="Foo tool"
        license=('MIT' 'Apache-2.0')
        deps=(libc)
        deps_fedora=(glibc)
        sources=("https://example.org/foo.tgz")
        checksums=(SKIP)
        backup=(/etc/foo.conf)
        declare -A scripts=([postinstall]=post.sh)
    """)

    spec = dec.decode_vars()

    assert (spec.name, spec.version, spec.release, spec.epoch) == ("foo", "1.2", 3, 1)
    assert spec.description == "Foo tool"
    assert spec.licenses == ["MIT", "Apache-2.0"]
    assert spec.depends == ["glibc"]
    assert spec.sources == ["https://example.org/foo.tgz"]
    assert spec.checksums == ["SKIP"]
    assert spec.backup == ["/etc/foo.conf"]
    assert spec.scripts.postinstall == "post.sh"
    assert spec.full_version == "1:1.2-3"


def test_missing_required_field_raises(sh) -> None:
    dec = decoder(sh, "name=foo; version=1")

    with pytest.raises(VarNotFoundError) as exc:
        dec.decode_vars()
    assert exc.value.name == "release"


def test_optional_fields_default_to_empty(sh) -> None:
    spec = decoder(sh, "name=foo; version=1; release=1").decode_vars()

    assert spec.depends == []
    assert spec.epoch == 0
    assert spec.description == ""


def test_replaces_honours_distro_override(sh) -> None:
    dec = decoder(sh, """
        name=foo; version=1; release=1
        replaces=(old-foo)
        replaces_fedora=(foo-legacy)
    """)

    assert dec.decode_vars().replaces == ["foo-legacy"]
    assert decoder(sh, "name=foo; version=1; release=1; replaces=(old-foo); replaces_fedora=(x)",
                   DistroContext(id="arch", arch="amd64")).decode_vars().replaces == ["old-foo"]


def test_empty_override_still_wins(sh) -> None:
    dec = decoder(sh, "name=foo; version=1; release=1; deps=(a b); deps_fedora=()")

    assert dec.decode_vars().depends == []


def test_bad_integer_raises_decode_error(sh) -> None:
    with pytest.raises(DecodeError):
        decoder(sh, "name=foo; version=1; release=abc").decode_vars()


@pytest.mark.parametrize("value,kind,expected", [
    ("a", "list", ["a"]),
    ("", "list", []),
    (["x"], "str", "x"),
    ([], "str", ""),
    (" 7 ", "int", 7),
    ("", "uint", 0),
])
def test_convert_weak_typing(value, kind: str, expected) -> None:
    assert convert("v", value, kind) == expected


def test_convert_rejects_mismatched_shapes() -> None:
    with pytest.raises(DecodeError):
        convert("v", ["a", "b"], "str")
    with pytest.raises(DecodeError):
        convert("v", "-1", "uint")
    with pytest.raises(DecodeError):
        convert("v", {"k": "v"}, "list")


def test_get_func_uses_override_and_isolates_calls(sh) -> None:
    dec = decoder(sh, """
        counter=0
        build() { echo generic; }
        build_fedora() { counter=1; echo "fedora $1"; }
        package() { return 2; }
    """)
    buf = io.StringIO()

    dec.get_func("build")(args=["x"], stdout=buf)

    assert buf.getvalue() == "fedora x\n"
    assert dec.runner.get_str("counter") == "0"
    assert dec.get_func("prepare") is None
    with pytest.raises(ScriptError):
        dec.get_func("package")(stdout=io.StringIO())


def test_set_version_rewrites_session_and_spec(sh) -> None:
    dec = decoder(sh, "name=foo; version=1; release=1")
    spec = dec.decode_vars()

    dec.set_version(spec, "2.0")

    assert spec.version == "2.0"
    assert dec.runner.get_str("version") == "2.0"
