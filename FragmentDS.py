#!/usr/bin/env python3
"""
Fragment Depth Equalization Pipeline for BED fragment and BAM alignment files
Complete workflow: depth counting → QC exclusion → downsampling → 50bp bigWig

This pipeline integrates:
1. Per-file depth measurement (line counting or samtools flag-filtered counts)
2. Population QC that drops outlier-low libraries
3. Uniform downsampling of every surviving library to a common depth
4. Parallel per-file coverage track generation with bedtools / deepTools

Version: 6.3
"""

import numpy as np
import pandas as pd
import json
import argparse
import logging
import sys
import os
import random
import time
import shutil
import subprocess
import signal
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import cached_property
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, List, Tuple, Optional, Iterable, Iterator, Mapping
from tqdm import tqdm

__version__ = "6.3"

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Constants
DEFAULT_EXCLUDE_SD = 1.5  # Libraries below mean - k*SD are excluded
DEFAULT_BIN_SIZE = 50  # Coverage track bin width (bp)
DEFAULT_SUBSAMPLE_SEED = 42  # Integer part of samtools -s SEED.FRAC
PROPER_PAIR_FLAG = 2  # samtools -f: read mapped in proper pair
EXCLUDE_FLAGS = 260  # samtools -F: unmapped (4) + secondary (256)

INTERVAL_TOOLS = ['bedtools', 'awk', 'sort', 'bedGraphToBigWig']
ALIGNMENT_TOOLS = ['samtools', 'bamCoverage']

# Exit statuses
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_NO_INPUT = 3
EXIT_CHROM_SIZES = 4
EXIT_DEPTH_FAILED = 5
EXIT_QC_EMPTY = 6
EXIT_BINS_FAILED = 7
EXIT_MISSING_TOOLS = 8


class FragmentDSError(Exception):
    """Fatal error that terminates the whole run."""
    exit_code = EXIT_ERROR


class ConfigError(FragmentDSError):
    exit_code = EXIT_USAGE


class NoInputFilesError(FragmentDSError):
    exit_code = EXIT_NO_INPUT


class ChromosomeSizesError(FragmentDSError):
    exit_code = EXIT_CHROM_SIZES


class DepthMeasurementError(FragmentDSError):
    exit_code = EXIT_DEPTH_FAILED


class EmptyQCError(FragmentDSError):
    exit_code = EXIT_QC_EMPTY


class BinsCreationError(FragmentDSError):
    exit_code = EXIT_BINS_FAILED


class MissingToolsError(FragmentDSError):
    exit_code = EXIT_MISSING_TOOLS


class CommandFailedError(RuntimeError):
    """An external command exited non-zero (file-scoped, not fatal)."""

    def __init__(self, program: str, returncode: int, stderr: str = ''):
        self.program = program
        self.returncode = returncode
        self.stderr = stderr
        message = f"{program} failed with exit code {returncode}"
        if stderr.strip():
            message += f": {stderr.strip().splitlines()[-1]}"
        super().__init__(message)


# Global utility functions
def validate_file_exists(filepath, description: str = "File") -> None:
    """Validate that a file exists and is readable."""
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"{description} not found: {filepath}")
    if not os.access(filepath, os.R_OK):
        raise PermissionError(f"{description} is not readable: {filepath}")

def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safely divide two numbers, returning default if denominator is zero."""
    if abs(denominator) < 1e-10:  # Avoid division by very small numbers
        return default
    return numerator / denominator

def setup_logging_with_file(output_dir: str, log_name: str = "fragmentds") -> None:
    """Set up logging with both file and console output."""
    Path(output_dir).mkdir(parents=True, exist_ok=True)
    log_file = Path(output_dir) / f"{log_name}_{time.strftime('%Y%m%d_%H%M%S')}.log"

    # Create formatter
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    # File handler
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    # Console handler
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers = []  # Clear existing handlers
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    logger.info(f"Logging to file: {log_file}")


# ---------------------------------------------------------------------------
# External commands
# ---------------------------------------------------------------------------

@dataclass
class ExternalCommand:
    """A delegated tool invocation with optional file redirection."""
    program: str
    args: List[str] = field(default_factory=list)
    stdin: Optional[Path] = None
    stdout: Optional[Path] = None

    def argv(self) -> List[str]:
        return [self.program] + [str(a) for a in self.args]

    def __str__(self) -> str:
        text = ' '.join(self.argv())
        if self.stdin:
            text += f" < {self.stdin}"
        if self.stdout:
            text += f" > {self.stdout}"
        return text


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ''
    stderr: str = ''

    @property
    def success(self) -> bool:
        return self.returncode == 0


class SubprocessRunner:
    """Runs ExternalCommands with subprocess, blocking until the process exits."""

    def run(self, command: ExternalCommand) -> CommandResult:
        logger.debug(f"Running: {command}")
        stdin_handle = open(command.stdin, 'rb') if command.stdin else None
        try:
            stdout_handle = open(command.stdout, 'wb') if command.stdout else None
            try:
                result = subprocess.run(
                    command.argv(),
                    stdin=stdin_handle,
                    stdout=stdout_handle if stdout_handle else subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    check=False
                )
            finally:
                if stdout_handle:
                    stdout_handle.close()
        finally:
            if stdin_handle:
                stdin_handle.close()

        stdout = result.stdout.decode(errors='replace') if result.stdout else ''
        stderr = result.stderr.decode(errors='replace') if result.stderr else ''
        return CommandResult(result.returncode, stdout, stderr)


def run_checked(runner, command: ExternalCommand) -> CommandResult:
    """Run a command and raise CommandFailedError on a non-zero exit."""
    result = runner.run(command)
    if not result.success:
        raise CommandFailedError(command.program, result.returncode, result.stderr)
    return result


def check_required_tools(input_format: "InputFormat") -> List[str]:
    """Return the external tools needed for input_format that are not on PATH."""
    required = INTERVAL_TOOLS if input_format is InputFormat.INTERVAL else ALIGNMENT_TOOLS
    return [tool for tool in required if not shutil.which(tool)]


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

class InputFormat(Enum):
    INTERVAL = 'bed'
    ALIGNMENT = 'bam'


class QCStatus(Enum):
    INCLUDED = 'included'
    EXCLUDED = 'excluded'


@dataclass(frozen=True)
class InputFile:
    """A fragment/alignment file with its measured depth and QC status."""
    path: Path
    format: InputFormat
    depth: int = 0
    status: Optional[QCStatus] = None

    @property
    def name(self) -> str:
        return self.path.name


class ChromosomeOrder:
    """
    Read-only mapping of chromosome name to genome rank.

    Ranks follow the order of first appearance in a chromosome sizes file,
    counting non-blank lines only. A name listed twice keeps its last rank.
    """

    def __init__(self, ranks: Mapping[str, int]):
        self._ranks = MappingProxyType(dict(ranks))

    @classmethod
    def from_sizes_file(cls, chrom_sizes) -> "ChromosomeOrder":
        validate_file_exists(chrom_sizes, "Chromosome sizes file")
        ranks = {}
        rank = 0
        with open(chrom_sizes, 'r') as f:
            for line in f:
                fields = line.split()
                if not fields:
                    continue
                ranks[fields[0]] = rank
                rank += 1
        return cls(ranks)

    def rank(self, chrom: str) -> Optional[int]:
        return self._ranks.get(chrom)

    @property
    def ranks(self) -> Mapping[str, int]:
        return self._ranks

    def __contains__(self, chrom) -> bool:
        return chrom in self._ranks

    def __len__(self) -> int:
        return len(self._ranks)


class SampledRecord:
    """One data line of an interval file with lazily parsed sort keys."""

    def __init__(self, text: str):
        self.text = text

    @cached_property
    def _fields(self) -> List[str]:
        return self.text.split('\t', 2)

    @property
    def chrom(self) -> str:
        return self._fields[0]

    @cached_property
    def start(self) -> int:
        # Unsigned coordinate; anything else sorts as 0
        try:
            value = int(self._fields[1])
        except (IndexError, ValueError):
            return 0
        return value if value >= 0 else 0

    def __repr__(self) -> str:
        return f"SampledRecord({self.text!r})"


# ---------------------------------------------------------------------------
# Depth counting
# ---------------------------------------------------------------------------

def count_interval_records(path) -> int:
    """Count non-blank lines after the first (header) line of an interval file."""
    validate_file_exists(path, "Fragment file")
    count = 0
    with open(path, 'r') as f:
        next(f, None)  # header, even when it is a data line
        for line in f:
            if line.strip():
                count += 1
    return count


def alignment_filter_args() -> List[str]:
    return ['-f', str(PROPER_PAIR_FLAG), '-F', str(EXCLUDE_FLAGS)]


def count_alignment_reads(path, runner) -> int:
    """
    Count properly paired, primary, mapped reads with samtools.

    Raises:
        DepthMeasurementError: if samtools cannot be run or exits non-zero
    """
    command = ExternalCommand('samtools', ['view', '-c'] + alignment_filter_args() + [str(path)])
    try:
        result = runner.run(command)
    except OSError as e:
        raise DepthMeasurementError(f"samtools count failed for {path}: {e}") from e
    if not result.success:
        raise DepthMeasurementError(
            f"samtools count failed for {path} (exit code {result.returncode})"
        )
    try:
        return max(int(result.stdout.strip()), 0)
    except ValueError:
        logger.warning(f"Could not parse samtools count for {path}: {result.stdout.strip()!r}")
        return 0


# ---------------------------------------------------------------------------
# QC
# ---------------------------------------------------------------------------

@dataclass
class QCResult:
    """Population depth statistics and the included/excluded partition."""
    mean: float
    stddev: float
    cutoff: float
    exclude_sd: float
    included: List[InputFile]
    excluded: List[InputFile]
    target_depth: int
    zscores: Dict[Path, float] = field(default_factory=dict)

    def report(self) -> None:
        """Log the QC statistics and any excluded libraries."""
        logger.info(f"QC: Mean={self.mean:.3f}, SD={self.stddev:.3f}, cutoff={self.cutoff:.3f}")
        if self.excluded:
            logger.warning("Excluded samples with low fragment counts:")
            for f in self.excluded:
                logger.warning(f"  {f.path} => {f.depth}")
        logger.info(f"{len(self.included)} samples pass QC, target depth = {self.target_depth}")

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for f in sorted(self.included + self.excluded, key=lambda x: str(x.path)):
            rows.append({
                'file': str(f.path),
                'format': f.format.value,
                'depth': f.depth,
                'zscore': self.zscores.get(f.path, 0.0),
                'status': f.status.value if f.status else ''
            })
        return pd.DataFrame(rows, columns=['file', 'format', 'depth', 'zscore', 'status'])

    def metadata(self) -> Dict:
        return {
            'mean': float(self.mean),
            'stddev': float(self.stddev),
            'cutoff': float(self.cutoff),
            'exclude_sd': float(self.exclude_sd),
            'target_depth': int(self.target_depth),
            'n_included': len(self.included),
            'n_excluded': len(self.excluded),
            'excluded': [str(f.path) for f in self.excluded]
        }


def compute_qc(files: List[InputFile], exclude_sd: float = DEFAULT_EXCLUDE_SD) -> QCResult:
    """
    Exclude outlier-low libraries and pick the common target depth.

    Args:
        files: input files with measured depths
        exclude_sd: number of population standard deviations below the mean
            at which a library is excluded

    Returns:
        QCResult with new InputFile instances carrying their QC status

    Raises:
        NoInputFilesError: if files is empty
        EmptyQCError: if no library reaches the cutoff
    """
    if not files:
        raise NoInputFilesError("No fragment files provided")

    depths = np.array([f.depth for f in files], dtype=float)
    mean_val = float(np.mean(depths))
    sd_val = float(np.std(depths))  # population SD (ddof=0)
    cutoff = max(0.0, mean_val - exclude_sd * sd_val)

    included = []
    excluded = []
    zscores = {}
    for f, depth in zip(files, depths):
        zscores[f.path] = safe_divide(depth - mean_val, sd_val, 0.0)
        if depth >= cutoff:
            included.append(replace(f, status=QCStatus.INCLUDED))
        else:
            excluded.append(replace(f, status=QCStatus.EXCLUDED))

    qc = QCResult(
        mean=mean_val,
        stddev=sd_val,
        cutoff=cutoff,
        exclude_sd=exclude_sd,
        included=included,
        excluded=excluded,
        target_depth=min((f.depth for f in included), default=0),
        zscores=zscores
    )
    qc.report()

    if not included:
        raise EmptyQCError("No samples pass the QC cutoff")
    return qc


def write_qc_report(qc: QCResult, output_file) -> None:
    """Write the per-file QC table (TSV) and a JSON metadata sidecar."""
    output_file = str(output_file)
    qc.to_frame().to_csv(output_file, sep='\t', index=False)

    base = output_file[:-4] if output_file.endswith('.tsv') else output_file
    metadata_file = f"{base}_metadata.json"
    with open(metadata_file, 'w') as f:
        json.dump(qc.metadata(), f, indent=2)

    logger.info(f"QC report saved to {output_file}")
    logger.info(f"Metadata saved to {metadata_file}")


# ---------------------------------------------------------------------------
# Sampling and ordering
# ---------------------------------------------------------------------------

def iter_data_lines(handle) -> Iterator[str]:
    for line in handle:
        line = line.rstrip('\r\n')
        if line.strip():
            yield line


def reservoir_sample(path, target: int,
                     rng: Optional[random.Random] = None) -> Tuple[Optional[str], List[str]]:
    """
    Uniformly sample exactly min(target, m) data lines of an interval file.

    Single pass Algorithm R over the m non-blank lines that follow the header.
    The header is returned separately and never takes part in sampling.

    Args:
        path: interval (BED) file
        target: reservoir size
        rng: random source; a fresh unseeded Random when omitted

    Returns:
        Tuple of (header line or None for an empty file, sampled lines)
    """
    rng = rng or random.Random()
    reservoir: List[str] = []
    with open(path, 'r') as f:
        header = f.readline()
        if not header:
            return None, reservoir
        header = header.rstrip('\r\n')

        for i, line in enumerate(iter_data_lines(f)):
            if i < target:
                reservoir.append(line)
            else:
                j = rng.randint(0, i)
                if j < target:
                    reservoir[j] = line
    return header, reservoir


def order_records(records: Iterable[SampledRecord],
                  chrom_order: ChromosomeOrder) -> List[SampledRecord]:
    """Drop records on unknown chromosomes and stable-sort by (rank, start)."""
    kept = [r for r in records if r.chrom in chrom_order]
    kept.sort(key=lambda r: (chrom_order.rank(r.chrom), r.start))
    return kept


def subsample_fraction(target: int, depth: int) -> float:
    """Fraction of reads to keep so that depth shrinks to about target."""
    return min(1.0, safe_divide(target, depth, 1.0))


def seed_fraction_string(seed: int, fraction: float) -> str:
    """samtools -s argument: integer seed, then the fraction as three digits."""
    # samtools treats a zero fraction as "keep everything"
    return f"{seed}.{max(1, int(fraction * 1000)):03d}"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class RunConfig:
    """Run-wide settings, built once and passed to every component."""
    input_format: InputFormat = InputFormat.INTERVAL
    files: List[Path] = field(default_factory=list)
    chrom_sizes: Optional[Path] = None
    blacklist: Optional[Path] = None
    exclude_sd: float = DEFAULT_EXCLUDE_SD
    keep_bedgraph: bool = False
    keep_tmp_bam: bool = False
    threads: int = 0
    bin_size: int = DEFAULT_BIN_SIZE
    subsample_seed: int = DEFAULT_SUBSAMPLE_SEED
    sample_seed: Optional[int] = None
    work_dir: Path = Path('.')
    qc_report: Optional[Path] = None
    progress: bool = True

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "RunConfig":
        return cls(
            input_format=InputFormat(args.input_type),
            files=[Path(f) for f in args.files],
            chrom_sizes=Path(args.chrom_sizes) if args.chrom_sizes else None,
            blacklist=Path(args.blacklist) if args.blacklist else None,
            exclude_sd=args.exclude_sd,
            keep_bedgraph=args.keep_bedgraph,
            keep_tmp_bam=args.keep_tmp_bam,
            threads=args.threads,
            bin_size=args.bin_size,
            subsample_seed=args.subsample_seed,
            sample_seed=args.sample_seed,
            work_dir=Path(args.work_dir),
            qc_report=Path(args.qc_report) if args.qc_report else None,
            progress=not args.no_progress
        )

    def validate(self) -> None:
        if self.input_format is InputFormat.INTERVAL and self.chrom_sizes is None:
            raise ConfigError("--chrom-sizes is required when --input-type is bed")
        if self.threads < 0:
            raise ConfigError(f"--threads must be >= 0, got {self.threads}")
        if self.bin_size <= 0:
            raise ConfigError(f"--bin-size must be positive, got {self.bin_size}")

    @property
    def workers(self) -> int:
        return self.threads if self.threads > 0 else (os.cpu_count() or 1)

    @property
    def retain_intermediates(self) -> bool:
        if self.input_format is InputFormat.INTERVAL:
            return self.keep_bedgraph
        return self.keep_tmp_bam


# ---------------------------------------------------------------------------
# Per-file pipelines
# ---------------------------------------------------------------------------

class TaskState(Enum):
    QUEUED = 'queued'
    SAMPLING = 'sampling'
    LOCAL_WRITE = 'local_write'
    NORMALIZE_ORDER = 'normalize_order'
    COVERAGE_COMPUTE = 'coverage_compute'
    TRACK_ENCODE = 'track_encode'
    CLEANUP = 'cleanup'
    COMPLETED = 'completed'
    FAILED = 'failed'

    @property
    def terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED)


@dataclass
class PipelineTask:
    """Mutable per-file state, owned by the worker that runs it."""
    input_file: InputFile
    state: TaskState = TaskState.QUEUED
    intermediates: List[Path] = field(default_factory=list)
    output: Optional[Path] = None
    error: Optional[str] = None
    # Stage-to-stage hand-off (sampled records, written paths)
    scratch: Dict = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.input_file.name

    def track(self, path: Path) -> Path:
        """Register an intermediate artifact for cleanup and return it."""
        self.intermediates.append(path)
        return path


@dataclass(frozen=True)
class TaskOutcome:
    path: Path
    state: TaskState
    output: Optional[Path] = None
    error: Optional[str] = None


class FilePipeline:
    """
    Per-file processing for one input format.

    Subclasses list their stages in order; each stage is a method taking the
    task and raising on failure.
    """
    input_format: InputFormat = None

    def __init__(self, config: RunConfig, runner, rng: Optional[random.Random] = None):
        self.config = config
        self.runner = runner
        self.rng = rng
        self.target_depth = 0

    def prepare(self, qc: QCResult) -> None:
        """Run-level setup after QC and before any task starts."""
        self.target_depth = qc.target_depth

    def measure_depth(self, path: Path) -> int:
        raise NotImplementedError

    def stages(self) -> List[Tuple[TaskState, Callable[[PipelineTask], None]]]:
        raise NotImplementedError

    def bin_tag(self) -> str:
        return f"{self.config.bin_size}bp"

    def track_path(self, path: Path) -> Path:
        return path.with_name(f"{path.name}_{self.bin_tag()}.bw")

    def _run(self, command: ExternalCommand) -> CommandResult:
        return run_checked(self.runner, command)


class IntervalPipeline(FilePipeline):
    """BED fragments: reservoir sample, sort, bin counts, bigWig."""
    input_format = InputFormat.INTERVAL

    def __init__(self, config: RunConfig, runner, chrom_order: ChromosomeOrder,
                 rng: Optional[random.Random] = None):
        super().__init__(config, runner, rng)
        self.chrom_order = chrom_order
        self.bins_bed: Optional[Path] = None
        self.task_seeds: Dict[Path, int] = {}

    def prepare(self, qc: QCResult) -> None:
        super().prepare(qc)
        # Seeds are fixed in input order so worker scheduling cannot reorder them
        if self.rng is not None:
            self.task_seeds = {f.path: self.rng.getrandbits(64) for f in qc.included}
        self.bins_bed = create_genome_bins(
            self.config.chrom_sizes, self.config.bin_size, self.config.work_dir, self.runner
        )

    def measure_depth(self, path: Path) -> int:
        return count_interval_records(path)

    def stages(self):
        return [
            (TaskState.SAMPLING, self.sample),
            (TaskState.LOCAL_WRITE, self.write_downsampled),
            (TaskState.NORMALIZE_ORDER, self.sort_intervals),
            (TaskState.COVERAGE_COMPUTE, self.compute_coverage),
            (TaskState.TRACK_ENCODE, self.encode_track),
        ]

    def _task_rng(self, task: PipelineTask) -> random.Random:
        return random.Random(self.task_seeds.get(task.input_file.path))

    def sample(self, task: PipelineTask) -> None:
        header, lines = reservoir_sample(
            task.input_file.path, self.target_depth, rng=self._task_rng(task)
        )
        task.scratch['header'] = header
        task.scratch['records'] = [SampledRecord(line) for line in lines]

    def write_downsampled(self, task: PipelineTask) -> None:
        path = task.input_file.path
        records = order_records(task.scratch.pop('records'), self.chrom_order)
        out_bed = task.track(path.with_name(f"{path.name}_downsampled.bed"))
        with open(out_bed, 'w') as f:
            header = task.scratch.pop('header')
            if header is not None:
                f.write(f"{header}\n")
            for record in records:
                f.write(f"{record.text}\n")
        task.scratch['downsampled'] = out_bed
        logger.debug(f"{task.name}: wrote {len(records)} records to {out_bed}")

    def sort_intervals(self, task: PipelineTask) -> None:
        out_bed = task.scratch['downsampled']
        sorted_bed = task.track(out_bed.with_name(f"{out_bed.stem}_sorted.bed"))
        self._run(ExternalCommand(
            'bedtools',
            ['sort', '-faidx', str(self.config.chrom_sizes), '-i', str(out_bed)],
            stdout=sorted_bed
        ))
        task.scratch['sorted'] = sorted_bed

    def compute_coverage(self, task: PipelineTask) -> None:
        path = task.input_file.path
        tag = self.bin_tag()
        counts_bed = task.track(path.with_name(f"{path.name}_{tag}_counts.bed"))
        self._run(ExternalCommand(
            'bedtools',
            ['coverage', '-a', str(self.bins_bed), '-b', str(task.scratch['sorted']), '-counts'],
            stdout=counts_bed
        ))

        bedgraph = task.track(path.with_name(f"{path.name}_{tag}.bedGraph"))
        self._run(ExternalCommand(
            'awk', [r'BEGIN {OFS="\t"} {print $1, $2, $3, $4}'],
            stdin=counts_bed, stdout=bedgraph
        ))

        sorted_bedgraph = task.track(path.with_name(f"{path.name}_{tag}_sorted.bedGraph"))
        self._run(ExternalCommand(
            'sort', ['--parallel=1', '-k1,1', '-k2,2n', str(bedgraph)],
            stdout=sorted_bedgraph
        ))
        task.scratch['bedgraph'] = sorted_bedgraph

    def encode_track(self, task: PipelineTask) -> None:
        bigwig = self.track_path(task.input_file.path)
        self._run(ExternalCommand(
            'bedGraphToBigWig',
            [str(task.scratch['bedgraph']), str(self.config.chrom_sizes), str(bigwig)]
        ))
        task.output = bigwig


class AlignmentPipeline(FilePipeline):
    """BAM alignments: samtools fractional subsample, index, bamCoverage."""
    input_format = InputFormat.ALIGNMENT

    def measure_depth(self, path: Path) -> int:
        return count_alignment_reads(path, self.runner)

    def stages(self):
        return [
            (TaskState.SAMPLING, self.subsample),
            (TaskState.NORMALIZE_ORDER, self.index),
            (TaskState.TRACK_ENCODE, self.encode_track),
        ]

    def subsample(self, task: PipelineTask) -> None:
        path = task.input_file.path
        tmp_bam = task.track(path.with_name(f"{path.name}_downsampled.bam"))
        fraction = subsample_fraction(self.target_depth, task.input_file.depth)

        args = ['view', '-b']
        if fraction < 1.0:
            # "42.1000" would be read by samtools as a 0.1 fraction
            args += ['-s', seed_fraction_string(self.config.subsample_seed, fraction)]
        args += alignment_filter_args() + [str(path)]

        logger.debug(f"{task.name}: keeping fraction {fraction:.3f} of {task.input_file.depth} reads")
        self._run(ExternalCommand('samtools', args, stdout=tmp_bam))
        task.scratch['bam'] = tmp_bam

    def index(self, task: PipelineTask) -> None:
        tmp_bam = task.scratch['bam']
        task.track(tmp_bam.with_name(f"{tmp_bam.name}.bai"))
        task.track(tmp_bam.with_suffix('.bai'))
        self._run(ExternalCommand('samtools', ['index', str(tmp_bam)]))

    def encode_track(self, task: PipelineTask) -> None:
        bigwig = self.track_path(task.input_file.path)
        args = [
            '-p', '1',
            '-b', str(task.scratch['bam']),
            '--binSize', str(self.config.bin_size),
            '--normalizeUsing', 'None',
            '-o', str(bigwig),
        ]
        if self.config.blacklist:
            args += ['--blackListFileName', str(self.config.blacklist)]
        self._run(ExternalCommand('bamCoverage', args))
        task.output = bigwig


def create_genome_bins(chrom_sizes: Path, bin_size: int, work_dir: Path, runner) -> Path:
    """
    Build (or reuse) the genome-wide fixed-width bins BED.

    Raises:
        BinsCreationError: if bedtools fails or produces an empty file
    """
    bins_path = Path(work_dir) / f"genome_{bin_size}bp_bins.bed"
    if bins_path.exists() and bins_path.stat().st_size > 0:
        logger.info(f"Reusing genome bins: {bins_path}")
        return bins_path

    Path(work_dir).mkdir(parents=True, exist_ok=True)
    command = ExternalCommand(
        'bedtools', ['makewindows', '-g', str(chrom_sizes), '-w', str(bin_size)],
        stdout=bins_path
    )
    try:
        result = runner.run(command)
    except OSError as e:
        raise BinsCreationError(f"bedtools makewindows failed: {e}") from e
    if not result.success:
        raise BinsCreationError(f"bedtools makewindows failed (exit code {result.returncode})")
    if not bins_path.exists() or bins_path.stat().st_size == 0:
        raise BinsCreationError("bedtools makewindows produced empty bins file")

    logger.info(f"Created genome bins: {bins_path}")
    return bins_path


def build_pipeline(config: RunConfig, runner, chrom_order: Optional[ChromosomeOrder] = None,
                   rng: Optional[random.Random] = None) -> FilePipeline:
    if config.input_format is InputFormat.INTERVAL:
        if chrom_order is None:
            raise ConfigError("Interval pipeline requires a chromosome order")
        return IntervalPipeline(config, runner, chrom_order, rng=rng)
    return AlignmentPipeline(config, runner, rng=rng)


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

class ProgressObserver:
    """Receives task state transitions; must not influence results."""

    def on_transition(self, task: PipelineTask, previous: TaskState, current: TaskState) -> None:
        pass

    def close(self) -> None:
        pass


class TqdmProgressReporter(ProgressObserver):
    """tqdm bar over files; the postfix shows the latest stage transition."""

    def __init__(self, n_tasks: int, disable: bool = False):
        self.bar = tqdm(total=n_tasks, desc="Downsampling", unit="file", disable=disable)
        self._lock = threading.Lock()

    def on_transition(self, task, previous, current) -> None:
        with self._lock:
            self.bar.set_postfix_str(f"{task.name}: {current.value}", refresh=False)
            if current.terminal:
                self.bar.update(1)

    def close(self) -> None:
        self.bar.close()


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class PipelineOrchestrator:
    """Runs one independent task per included file on a fixed worker pool."""

    def __init__(self, config: RunConfig, pipeline: FilePipeline,
                 observer: Optional[ProgressObserver] = None):
        self.config = config
        self.pipeline = pipeline
        self.observer = observer or ProgressObserver()

    def _transition(self, task: PipelineTask, state: TaskState) -> None:
        previous, task.state = task.state, state
        try:
            self.observer.on_transition(task, previous, state)
        except Exception as e:
            logger.warning(f"Progress observer error ignored: {e}")

    def _cleanup(self, task: PipelineTask) -> None:
        task.scratch.clear()
        if self.config.retain_intermediates:
            return
        for path in task.intermediates:
            try:
                os.remove(path)
            except OSError:
                pass

    def run_task(self, input_file: InputFile) -> TaskOutcome:
        task = PipelineTask(input_file)
        try:
            for state, stage in self.pipeline.stages():
                self._transition(task, state)
                stage(task)
        except Exception as e:
            task.error = f"{task.state.value}: {e}"
            logger.debug(f"{task.name} failed during {task.state.value}", exc_info=True)
        finally:
            self._transition(task, TaskState.CLEANUP)
            self._cleanup(task)

        self._transition(task, TaskState.FAILED if task.error else TaskState.COMPLETED)
        return TaskOutcome(input_file.path, task.state, task.output, task.error)

    def _log_outcome(self, i: int, total: int, outcome: TaskOutcome) -> None:
        if outcome.state is TaskState.COMPLETED:
            logger.info(f"[{i}/{total}] Wrote {outcome.output}")
        else:
            logger.error(f"[{i}/{total}] Failed {outcome.path.name}: {outcome.error}")

    def run(self, included: List[InputFile]) -> List[TaskOutcome]:
        workers = self.config.workers
        total = len(included)
        logger.info(f"Processing {total} files with {workers} worker(s)")
        outcomes = []

        if workers == 1:
            # Sequential processing
            for i, input_file in enumerate(included, 1):
                outcome = self.run_task(input_file)
                self._log_outcome(i, total, outcome)
                outcomes.append(outcome)
        else:
            # Parallel processing
            with ThreadPoolExecutor(max_workers=workers) as executor:
                future_to_file = {
                    executor.submit(self.run_task, input_file): input_file
                    for input_file in included
                }
                for i, future in enumerate(as_completed(future_to_file), 1):
                    input_file = future_to_file[future]
                    try:
                        outcome = future.result()
                    except Exception as e:
                        outcome = TaskOutcome(input_file.path, TaskState.FAILED, error=str(e))
                    self._log_outcome(i, total, outcome)
                    outcomes.append(outcome)

        return outcomes


# ---------------------------------------------------------------------------
# Run driver
# ---------------------------------------------------------------------------

@dataclass
class RunSummary:
    qc: QCResult
    outcomes: List[TaskOutcome]

    @property
    def completed(self) -> List[TaskOutcome]:
        return [o for o in self.outcomes if o.state is TaskState.COMPLETED]

    @property
    def failed(self) -> List[TaskOutcome]:
        return [o for o in self.outcomes if o.state is TaskState.FAILED]

    def log(self) -> None:
        logger.info("=" * 60)
        logger.info("Downsampling complete:")
        logger.info(f"  Input files: {len(self.qc.included) + len(self.qc.excluded)}")
        logger.info(f"  Excluded by QC: {len(self.qc.excluded)}")
        logger.info(f"  Target depth: {self.qc.target_depth}")
        logger.info(f"  Completed: {len(self.completed)}")
        logger.info(f"  Failed: {len(self.failed)}")
        for outcome in self.failed:
            logger.info(f"    {outcome.path}: {outcome.error}")


def measure_depths(files: List[Path], pipeline: FilePipeline) -> List[InputFile]:
    """Measure every input before QC; any failure is fatal for the run."""
    measured = []
    for path in files:
        try:
            depth = pipeline.measure_depth(path)
        except (OSError, UnicodeDecodeError) as e:
            raise DepthMeasurementError(f"Could not count records in {path}: {e}") from e
        logger.info(f"{path}: {depth} usable records")
        measured.append(InputFile(Path(path), pipeline.input_format, depth))
    return measured


def run_pipeline(config: RunConfig, runner=None, observer: Optional[ProgressObserver] = None,
                 rng: Optional[random.Random] = None) -> RunSummary:
    """
    Measure, QC, and downsample every input file.

    Raises:
        FragmentDSError: for any fatal condition (see exit codes)
    """
    config.validate()
    if not config.files:
        raise NoInputFilesError("No fragment files provided.")

    runner = runner or SubprocessRunner()
    if rng is None and config.sample_seed is not None:
        rng = random.Random(config.sample_seed)

    chrom_order = None
    if config.input_format is InputFormat.INTERVAL:
        try:
            chrom_order = ChromosomeOrder.from_sizes_file(config.chrom_sizes)
        except (OSError, UnicodeDecodeError) as e:
            raise ChromosomeSizesError(f"Cannot read chromosome sizes: {e}") from e
        logger.info(f"Loaded {len(chrom_order)} chromosomes from {config.chrom_sizes}")

    pipeline = build_pipeline(config, runner, chrom_order, rng=rng)

    files = measure_depths(config.files, pipeline)
    qc = compute_qc(files, config.exclude_sd)
    if config.qc_report:
        write_qc_report(qc, config.qc_report)

    pipeline.prepare(qc)

    own_observer = observer is None
    if own_observer:
        observer = TqdmProgressReporter(len(qc.included), disable=not config.progress)
    try:
        outcomes = PipelineOrchestrator(config, pipeline, observer).run(qc.included)
    finally:
        if own_observer:
            observer.close()

    summary = RunSummary(qc, outcomes)
    summary.log()
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='fragmentds',
        description='Equalize sequencing depth across fragment BED or BAM files and write 50bp bigWig tracks',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Example usage:
    # Downsample fragment BED files (first line is a header)
    fragmentds --chrom-sizes hg38.chrom.sizes sample1.bed sample2.bed sample3.bed

    # BAM input, excluding blacklisted regions from the coverage tracks
    fragmentds --input-type bam --blacklist hg38-blacklist.bed *.bam -t 8

    # Stricter exclusion, keep intermediates and write a QC table
    fragmentds --chrom-sizes hg38.chrom.sizes -e 1.0 --keep-bedgraph --qc-report qc.tsv *.bed

Exit status is non-zero only for run-level failures (no input, unreadable
chromosome sizes, failed depth counting, empty QC set). Files that fail
during processing are reported and the run still exits 0.
        """
    )
    parser.add_argument('files', nargs='*',
                        help='Fragment BED or BAM files to process')
    parser.add_argument('--input-type', choices=[f.value for f in InputFormat], default='bed',
                        help="Input mode: 'bed' (default) or 'bam'")
    parser.add_argument('--chrom-sizes',
                        help='Chromosome sizes file (required if --input-type bed)')
    parser.add_argument('--blacklist',
                        help='Optional blacklist BED file (only used if --input-type bam)')
    parser.add_argument('-e', '--exclude-sd', type=float, default=DEFAULT_EXCLUDE_SD,
                        help=f'Z-score threshold for excluding low-yield libraries (default: {DEFAULT_EXCLUDE_SD})')
    parser.add_argument('--keep-bedgraph', action='store_true',
                        help='Keep intermediate BED/bedGraph files (only in bed mode)')
    parser.add_argument('--keep-tmp-bam', action='store_true',
                        help='Keep temporary downsampled BAM files (only in bam mode)')
    parser.add_argument('-t', '--threads', type=int, default=0,
                        help='Number of parallel files (default: 0, use all available cores)')
    parser.add_argument('--bin-size', type=int, default=DEFAULT_BIN_SIZE,
                        help=f'Coverage bin size in bp (default: {DEFAULT_BIN_SIZE})')
    parser.add_argument('--subsample-seed', type=int, default=DEFAULT_SUBSAMPLE_SEED,
                        help=f'samtools subsampling seed for bam mode (default: {DEFAULT_SUBSAMPLE_SEED})')
    parser.add_argument('--sample-seed', type=int,
                        help='Seed for BED reservoir sampling (default: unseeded)')
    parser.add_argument('--work-dir', default='.',
                        help='Directory for the shared genome bins file (default: current directory)')
    parser.add_argument('--qc-report',
                        help='Write per-file depth/QC table (TSV) plus a _metadata.json sidecar')
    parser.add_argument('--log-dir',
                        help='Also write a timestamped log file to this directory')
    parser.add_argument('--no-progress', action='store_true',
                        help='Disable the progress bar')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug mode with verbose output')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for fragment depth equalization."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Set debug level if requested
    if args.debug:
        logger.setLevel(logging.DEBUG)
        logger.debug("Debug mode enabled")

    try:
        config = RunConfig.from_args(args)
        config.validate()
        if not config.files:
            raise NoInputFilesError("No fragment files provided.")

        if args.log_dir:
            setup_logging_with_file(args.log_dir)

        if config.blacklist and config.input_format is InputFormat.INTERVAL:
            logger.warning("--blacklist is only used with --input-type bam, ignoring")

        missing = check_required_tools(config.input_format)
        if missing:
            raise MissingToolsError(
                f"Missing required tools: {', '.join(missing)}. Please install and add to PATH."
            )

        logger.info(f"Input type: {config.input_format.value}")
        logger.info(f"Files: {len(config.files)}")
        logger.info(f"Exclusion threshold: {config.exclude_sd} SD")
        logger.info(f"Workers: {config.workers}")

        run_pipeline(config)

    except FragmentDSError as e:
        logger.error(str(e))
        sys.exit(e.exit_code)
    except Exception as e:
        logger.error(f"Pipeline failed: {e}")
        if args.debug:
            import traceback
            traceback.print_exc()
        sys.exit(EXIT_ERROR)

    sys.exit(EXIT_OK)

if __name__ == '__main__':
    # Handle Ctrl+C gracefully
    signal.signal(signal.SIGINT, lambda x, y: sys.exit(130))
    main()
