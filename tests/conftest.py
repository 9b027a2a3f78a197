"""Shared test fixtures."""

import os
import shutil
import sys
import tempfile
import threading
from pathlib import Path

import pytest

from TexTrim.config import PipelineConfig
from TexTrim.errors import ConversionError

from builders import build_tes4, make_dds, write_file


@pytest.fixture
def tmp_dir():
    d = tempfile.mkdtemp()
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def default_config():
    return PipelineConfig()


class FakeConverter:
    """In-process stand-in for the external converter.

    ``fail`` maps a lower-cased input stem to how many leading attempts
    should fail (``-1`` fails forever). ``calls`` records lower-cased stems;
    the output keeps the on-disk case of the input.
    """

    def __init__(self, fail=None):
        self.fail = dict(fail or {})
        self.calls = []
        self._lock = threading.Lock()

    def resolve_tool(self):
        return "fake-texconv"

    def convert(self, input_path, output_dir, recipe, target_size=None):
        stem = Path(input_path).stem
        key = stem.lower()
        with self._lock:
            self.calls.append((key, recipe.recipe_id, target_size))
            remaining = self.fail.get(key, 0)
            if remaining:
                if remaining > 0:
                    self.fail[key] = remaining - 1
                raise ConversionError(f"fake failure for {stem}", returncode=1)
        os.makedirs(output_dir, exist_ok=True)
        out = os.path.join(output_dir, stem + ".dds")
        with open(input_path, "rb") as src, open(out, "wb") as dst:
            dst.write(src.read())
        return out


@pytest.fixture
def fake_converter():
    return FakeConverter()


STUB_CONVERTER = '''#!{python}
import os, shutil, sys, time
args = sys.argv[1:]
log = os.environ.get("TEXTRIM_STUB_LOG")
if log:
    with open(log, "a", encoding="utf-8") as fh:
        fh.write(" ".join(args) + "\\n")
time.sleep(float(os.environ.get("TEXTRIM_STUB_SLEEP", "0")))
code = int(os.environ.get("TEXTRIM_STUB_EXIT", "0"))
if code:
    print("stub failure", file=sys.stderr)
    sys.exit(code)
out_dir = args[args.index("-o") + 1]
src = args[-1]
stem = os.path.splitext(os.path.basename(src))[0]
if not os.environ.get("TEXTRIM_STUB_NO_OUTPUT"):
    shutil.copyfile(src, os.path.join(out_dir, stem + ".dds"))
'''


@pytest.fixture
def stub_converter(tmp_dir):
    """Path to an executable converter stub honoring TEXTRIM_STUB_* env vars."""
    if sys.platform == "win32":
        pytest.skip("shebang stub scripts need a POSIX platform")
    path = os.path.join(tmp_dir, "texconv-stub")
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(STUB_CONVERTER.format(python=sys.executable))
    os.chmod(path, 0o755)
    return path


@pytest.fixture
def game_setup(tmp_dir):
    """Data root plus three mods at priorities 1 < 2 < 3.

    * mod1 ships an archive with ``rock.dds`` and ``rock_n.dds``
    * mod2 ships loose ``tree.dds`` and ``tree_skip.dds``
    * mod3 overrides ``rock.dds`` with a loose copy and adds ``readme.txt``
    """
    data_root = os.path.join(tmp_dir, "Data")
    write_file(os.path.join(data_root, "textures", "base", "sky.dds"), make_dds(256, 256))

    mods_dir = os.path.join(tmp_dir, "mods")
    build_tes4(
        os.path.join(mods_dir, "mod1", "mod1.bsa"),
        {
            "textures/rocks/rock.dds": make_dds(1024, 1024, fourcc=b"DXT5"),
            "textures/rocks/rock_n.dds": make_dds(1024, 1024),
        },
        version=105, compress=True,
    )
    write_file(os.path.join(mods_dir, "mod2", "textures", "trees", "tree.dds"),
               make_dds(512, 512, fourcc=b"DXT5"))
    write_file(os.path.join(mods_dir, "mod2", "textures", "trees", "tree_skip.dds"),
               make_dds(512, 512, fourcc=b"DXT5"))
    write_file(os.path.join(mods_dir, "mod3", "Textures", "Rocks", "Rock.dds"),
               make_dds(4096, 4096, fourcc=b"DXT5"))
    write_file(os.path.join(mods_dir, "mod3", "readme.txt"), b"hello")
    write_file(os.path.join(mods_dir, "mod3", "meta.ini"), b"[General]\n")

    profile = os.path.join(tmp_dir, "profile.yaml")
    with open(profile, "w", encoding="utf-8") as fh:
        fh.write(
            "mods:\n"
            "  - {name: mod1, priority: 1, root: mods/mod1}\n"
            "  - {name: mod2, priority: 2, root: mods/mod2}\n"
            "  - {name: mod3, priority: 3, root: mods/mod3}\n"
        )

    rules_dir = os.path.join(tmp_dir, "rules")
    write_file(os.path.join(rules_dir, "skyrimse.txt"), b"# test rules\n*_skip.dds\n")

    config = PipelineConfig()
    config.data_root = data_root
    config.profile_path = profile
    config.output_dir = os.path.join(tmp_dir, "out")
    config.exclusions.rules_dir = rules_dir
    config.cache.cache_path = os.path.join(tmp_dir, "cache", "completion.json")
    config.optimize.max_workers = 2
    return config
