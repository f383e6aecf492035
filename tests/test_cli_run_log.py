from __future__ import annotations

import json
import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path


def _events(log_path: Path) -> list[str]:
    events: list[str] = []
    for ln in log_path.read_text(encoding="utf-8").splitlines():
        if not ln.strip():
            continue
        try:
            obj = json.loads(ln)
        except Exception:
            continue
        ev = obj.get("event")
        if isinstance(ev, str):
            events.append(ev)
    return events


class TestImportCommandWritesLog(unittest.TestCase):
    def _run(self, *args: str) -> subprocess.CompletedProcess[str]:
        repo_root = Path(__file__).resolve().parents[1]
        env = dict(os.environ)
        existing_pp = env.get("PYTHONPATH", "")
        env["PYTHONPATH"] = (
            f"{repo_root}{os.pathsep}{existing_pp}" if existing_pp else str(repo_root)
        )
        return subprocess.run(
            [sys.executable, "-m", "archive_ingest", *args],
            cwd=repo_root,
            env=env,
            capture_output=True,
            text=True,
        )

    def test_import_creates_run_log_on_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            out_dir = Path(td) / "out"
            archive = Path(td) / "twilog.csv"
            archive.write_text("1,https://twitter.com/a/status/1,2020/01/01 00:00:00,x\n", encoding="utf-8")

            proc = self._run(
                "import",
                "--file",
                str(archive),
                "--config",
                str(Path(td) / "missing_config.yaml"),
                "--out",
                str(out_dir),
            )

            self.assertEqual(proc.returncode, 2, msg=proc.stderr)

            log_path = out_dir / "run.log"
            self.assertTrue(log_path.exists())
            events = _events(log_path)
            self.assertIn("import_command_started", events)
            self.assertIn("import_command_failed", events)

    def test_log_is_appended_across_runs(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            out_dir = Path(td) / "out"
            archive = Path(td) / "twilog.csv"
            archive.write_text(
                "1,https://twitter.com/a/status/1,2020/01/01 00:00:00,x\n"
                "oops,https://twitter.com/a/status/2,2020/01/01 00:00:00,y\n",
                encoding="utf-8",
            )

            for _ in range(2):
                proc = self._run("import", "--file", str(archive), "--out", str(out_dir))
                self.assertEqual(proc.returncode, 0, msg=proc.stderr)

            events = _events(out_dir / "run.log")
            self.assertEqual(events.count("import_command_started"), 2)
            self.assertEqual(events.count("record_rejected"), 2)
            self.assertIn("batch_emitted", events)
            self.assertIn("import_completed", events)


if __name__ == "__main__":
    unittest.main()
