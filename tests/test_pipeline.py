import json
import os
import unittest
from unittest import mock

from bootpipe.config import BuildConfig
from bootpipe.cross import staged_layout_path
from bootpipe.errors import BuildFailed, DisassemblyFailed, PackagingFailed, UnknownBoard
from bootpipe.fsimage import staging_dir
from bootpipe.pipeline import Pipeline

from fakes.elfgen import payload_for
from helpers import WorkspaceTestCase, read_cargo_log


class TestBuild(WorkspaceTestCase):
    def test_scenario_hello(self):
        ws = self.workspace(user_programs=["hello"])
        config = self.config()
        pipeline = Pipeline(config, ws)

        result = pipeline.build()
        self.assertEqual(result.kernel_bin, ws.kernel_bin(config))
        self.assertEqual(result.kernel_bin.read_bytes(), payload_for("os"))
        packed = json.loads(ws.fs_image(config).read_text(encoding="utf-8"))
        self.assertIn("hello", packed["files"])

        descriptor = pipeline.launch_descriptor(result)
        storage = [d for d in descriptor.devices if d.kind == "storage"]
        self.assertEqual(len(storage), 1)
        self.assertIn(f"file={ws.fs_image(config)},if=none,format=raw,id=blk0", storage[0].args)

        self.assertEqual(pipeline.run(), 0)

    def test_no_user_programs_means_no_image(self):
        pipeline = Pipeline(self.config(), self.workspace())
        result = pipeline.build()
        self.assertIsNone(result.fs_image)
        descriptor = pipeline.launch_descriptor(result)
        self.assertNotIn("storage", [d.kind for d in descriptor.devices])

    def test_unknown_board_runs_nothing(self):
        with self.assertRaises(UnknownBoard):
            Pipeline(self.config(board="k210"), self.workspace())
        self.assertEqual(read_cargo_log(self.kernel_dir), [])

    def test_failed_compile_leaves_no_raw_binary(self):
        ws = self.workspace()
        config = self.config()
        Pipeline(config, ws).build()
        self.assertTrue(ws.kernel_bin(config).exists())

        self.write_cargo_spec(self.kernel_dir, {}, fail=101)
        with self.assertRaises(BuildFailed):
            Pipeline(config, ws).build()
        self.assertFalse(ws.kernel_bin(config).exists())
        self.assertFalse(staged_layout_path(self.kernel_dir).exists())

    def test_failed_pack_stops_before_fs_image(self):
        ws = self.workspace(user_programs=["hello"])
        with mock.patch.dict(os.environ, {"FAKE_OBJCOPY_FAIL": "1"}):
            with self.assertRaises(PackagingFailed):
                Pipeline(self.config(), ws).build()
        self.assertEqual(read_cargo_log(ws.user_dir), [])
        self.assertFalse(ws.fs_image(self.config()).exists())

    def test_run_forwards_emulator_status(self):
        with mock.patch.dict(os.environ, {"FAKE_QEMU_EXIT": "1"}):
            self.assertEqual(Pipeline(self.config(), self.workspace()).run(), 1)


class TestClean(WorkspaceTestCase):
    def test_clean_is_idempotent(self):
        ws = self.workspace(user_programs=["hello"])
        config = self.config()
        pipeline = Pipeline(config, ws)
        pipeline.build()

        removed = pipeline.clean()
        self.assertEqual(set(removed), {ws.kernel_elf(config), ws.kernel_bin(config), ws.fs_image(config)})
        for path in pipeline.artifact_paths():
            self.assertFalse(path.exists())
        self.assertEqual(pipeline.clean(), [])

    def test_clean_removes_leftover_packer_stage(self):
        ws = self.workspace(user_programs=["hello"])
        config = self.config()
        stage = staging_dir(ws.fs_image(config))
        (stage / "src").mkdir(parents=True)
        (stage / "src" / "hello.rs").touch()
        self.assertIn(stage, Pipeline(config, ws).clean())
        self.assertFalse(stage.exists())

    def test_clean_on_fresh_tree(self):
        self.assertEqual(Pipeline(BuildConfig(), self.workspace()).clean(), [])


class TestDisasm(WorkspaceTestCase):
    def test_disasm_after_compile(self):
        ws = self.workspace()
        config = self.config(disasm_flags=("-d",))
        self.assertEqual(Pipeline(config, ws).disasm(), 0)
        self.assertTrue(ws.kernel_elf(config).exists())
        self.assertFalse(ws.kernel_bin(config).exists())

    def test_disasm_failure(self):
        with mock.patch.dict(os.environ, {"FAKE_OBJDUMP_EXIT": "2"}):
            with self.assertRaises(DisassemblyFailed) as ctx:
                Pipeline(self.config(), self.workspace()).disasm()
        self.assertEqual(ctx.exception.code, 2)


if __name__ == "__main__":
    unittest.main()
