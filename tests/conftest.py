import os
import shutil
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import FragmentDS as fds


class FakeRunner:
    """
    Stand-in for SubprocessRunner that imitates the external tools closely
    enough for the pipeline to run: redirected outputs are written, bedtools
    sort copies its input and the track encoders touch their output file.
    """

    def __init__(self, counts=None, fail=None):
        self.counts = {str(k): v for k, v in (counts or {}).items()}
        # fail(command) -> returncode or 0
        self.fail = fail or (lambda command: 0)
        self.commands = []
        self._lock = threading.Lock()

    def programs(self):
        return [c.program for c in self.commands]

    def run(self, command):
        with self._lock:
            self.commands.append(command)

        returncode = self.fail(command)
        argv = command.argv()

        if command.program == 'samtools' and argv[1:3] == ['view', '-c']:
            if returncode:
                return fds.CommandResult(returncode, '', 'samtools: cannot open file')
            return fds.CommandResult(0, f"{self.counts.get(argv[-1], 0)}\n", '')

        if command.stdout:
            if command.program == 'bedtools' and argv[1] == 'sort':
                shutil.copyfile(argv[argv.index('-i') + 1], command.stdout)
            elif command.program == 'bedtools' and argv[1] == 'makewindows':
                Path(command.stdout).write_text("chr1\t0\t50\nchr1\t50\t100\n")
            else:
                Path(command.stdout).write_text(f"{command.program} output\n")

        if returncode:
            return fds.CommandResult(returncode, '', f"{command.program}: simulated failure")

        if command.program == 'bedGraphToBigWig':
            Path(argv[3]).write_text("bigwig\n")
        elif command.program == 'bamCoverage':
            Path(argv[argv.index('-o') + 1]).write_text("bigwig\n")
        elif command.program == 'samtools' and argv[1] == 'index':
            Path(f"{argv[2]}.bai").write_text("index\n")

        return fds.CommandResult(0, '', '')


class RecordingObserver(fds.ProgressObserver):

    def __init__(self):
        self.transitions = []
        self._lock = threading.Lock()

    def on_transition(self, task, previous, current):
        with self._lock:
            self.transitions.append((task.name, previous, current))

    def states_for(self, name):
        return [current for task_name, _, current in self.transitions if task_name == name]


def write_bed(path, records, header="chrom\tstart\tend"):
    lines = [header] if header is not None else []
    lines.extend("\t".join(str(x) for x in record) for record in records)
    path.write_text("\n".join(lines) + ("\n" if lines else ""))
    return path


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def recording_observer():
    return RecordingObserver()


@pytest.fixture
def chrom_sizes(tmp_path):
    path = tmp_path / "genome.chrom.sizes"
    path.write_text("chr1\t248956422\nchr2\t242193529\n")
    return path
