import json
import math
from pathlib import Path

import pandas as pd
import pytest

import FragmentDS as fds
from conftest import FakeRunner, write_bed


def make_files(depths, fmt=fds.InputFormat.INTERVAL):
    return [fds.InputFile(Path(f"sample{i}.bed"), fmt, d) for i, d in enumerate(depths)]


def population_stats(depths):
    mean = sum(depths) / len(depths)
    sd = math.sqrt(sum((d - mean) ** 2 for d in depths) / len(depths))
    return mean, sd


def test_count_interval_records_skips_header_and_blank_lines(tmp_path):
    path = tmp_path / "a.bed"
    # first line is a data line but still treated as the header
    path.write_text("chr1\t1\t2\nchr1\t3\t4\n\n  \nchr2\t5\t6\n")

    assert fds.count_interval_records(path) == 2


def test_count_interval_records_empty_and_header_only(tmp_path):
    empty = tmp_path / "empty.bed"
    empty.write_text("")
    header_only = tmp_path / "header.bed"
    header_only.write_text("chrom\tstart\tend\n")

    assert fds.count_interval_records(empty) == 0
    assert fds.count_interval_records(header_only) == 0


def test_count_alignment_reads_uses_pairing_and_primary_filter():
    runner = FakeRunner(counts={"x.bam": 1234})

    assert fds.count_alignment_reads("x.bam", runner) == 1234
    assert runner.commands[0].argv() == ["samtools", "view", "-c", "-f", "2", "-F", "260", "x.bam"]


def test_count_alignment_reads_unparsable_output_is_zero():
    runner = FakeRunner(counts={"x.bam": "not-a-number"})

    assert fds.count_alignment_reads("x.bam", runner) == 0


def test_count_alignment_reads_failure_is_fatal():
    runner = FakeRunner(fail=lambda command: 1)

    with pytest.raises(fds.DepthMeasurementError) as excinfo:
        fds.count_alignment_reads("x.bam", runner)

    assert excinfo.value.exit_code == fds.EXIT_DEPTH_FAILED


@pytest.mark.parametrize("depths,k", [
    ([100, 105, 10], 1.5),
    ([5, 5, 5], 1.5),
    ([1, 2, 3, 4, 1000], 0.5),
    ([42], 2.0),
    ([0, 0, 7], 1.0),
])
def test_cutoff_uses_population_standard_deviation(depths, k):
    mean, sd = population_stats(depths)

    qc = fds.compute_qc(make_files(depths), exclude_sd=k)

    assert qc.mean == pytest.approx(mean)
    assert qc.stddev == pytest.approx(sd)
    assert qc.cutoff == pytest.approx(max(0.0, mean - k * sd))
    assert qc.cutoff >= 0.0


def test_scenario_a_all_pass():
    qc = fds.compute_qc(make_files([100, 105, 10]), exclude_sd=1.5)

    assert qc.mean == pytest.approx(71.667, abs=1e-3)
    assert qc.cutoff < 10
    assert len(qc.included) == 3
    assert qc.excluded == []
    assert qc.target_depth == 10


def test_scenario_b_cutoff_clamped_to_zero():
    qc = fds.compute_qc(make_files([100, 100, 1]), exclude_sd=1.5)

    assert qc.mean == pytest.approx(67.0)
    assert qc.stddev == pytest.approx(46.669, abs=1e-3)
    assert qc.cutoff == 0.0
    assert len(qc.included) == 3
    assert qc.target_depth == 1


def test_scenario_d_low_library_excluded():
    files = make_files([10, 10, 10, 1])

    qc = fds.compute_qc(files, exclude_sd=0.1)

    assert qc.mean == pytest.approx(7.75)
    assert qc.stddev == pytest.approx(3.897, abs=1e-3)
    assert qc.cutoff == pytest.approx(7.36, abs=1e-2)
    assert [f.depth for f in qc.included] == [10, 10, 10]
    assert [f.path for f in qc.excluded] == [Path("sample3.bed")]
    assert qc.target_depth == 10


def test_target_depth_never_exceeds_included_depths():
    qc = fds.compute_qc(make_files([80, 95, 120, 60, 3]), exclude_sd=1.0)

    assert all(qc.target_depth <= f.depth for f in qc.included)
    assert qc.target_depth == min(f.depth for f in qc.included)


def test_statuses_set_on_new_instances():
    files = make_files([10, 10, 10, 1])

    qc = fds.compute_qc(files, exclude_sd=0.1)

    assert all(f.status is fds.QCStatus.INCLUDED for f in qc.included)
    assert all(f.status is fds.QCStatus.EXCLUDED for f in qc.excluded)
    assert all(f.status is None for f in files)


def test_no_files_is_fatal():
    with pytest.raises(fds.NoInputFilesError):
        fds.compute_qc([])


def test_empty_included_set_is_fatal():
    # a negative threshold puts the cutoff above every library
    with pytest.raises(fds.EmptyQCError) as excinfo:
        fds.compute_qc(make_files([1, 2]), exclude_sd=-10)

    assert excinfo.value.exit_code == fds.EXIT_QC_EMPTY


def test_qc_statistics_and_exclusions_are_logged(caplog):
    with caplog.at_level("INFO", logger="FragmentDS"):
        fds.compute_qc(make_files([10, 10, 10, 1]), exclude_sd=0.1)

    assert "QC: Mean=7.750" in caplog.text
    assert "Excluded samples with low fragment counts:" in caplog.text
    assert "sample3.bed => 1" in caplog.text


def test_write_qc_report_table_and_metadata(tmp_path):
    qc = fds.compute_qc(make_files([10, 10, 10, 1]), exclude_sd=0.1)
    report = tmp_path / "qc.tsv"

    fds.write_qc_report(qc, report)

    table = pd.read_csv(report, sep="\t")
    assert list(table.columns) == ["file", "format", "depth", "zscore", "status"]
    assert table.set_index("file").loc["sample3.bed", "status"] == "excluded"
    assert (table["status"] == "included").sum() == 3
    assert table.set_index("file").loc["sample3.bed", "zscore"] < 0

    metadata = json.loads((tmp_path / "qc_metadata.json").read_text())
    assert metadata["target_depth"] == 10
    assert metadata["n_excluded"] == 1
    assert metadata["exclude_sd"] == pytest.approx(0.1)


def test_measure_depths_missing_file_is_fatal(tmp_path, chrom_sizes):
    config = fds.RunConfig(chrom_sizes=chrom_sizes)
    pipeline = fds.build_pipeline(config, FakeRunner(), fds.ChromosomeOrder({"chr1": 0}))
    present = write_bed(tmp_path / "present.bed", [("chr1", 1, 2)])

    with pytest.raises(fds.DepthMeasurementError):
        fds.measure_depths([present, tmp_path / "missing.bed"], pipeline)


def test_measure_depths_undecodable_file_is_fatal(tmp_path, chrom_sizes):
    config = fds.RunConfig(chrom_sizes=chrom_sizes)
    pipeline = fds.build_pipeline(config, FakeRunner(), fds.ChromosomeOrder({"chr1": 0}))
    binary = tmp_path / "binary.bed"
    binary.write_bytes(b"chrom\tstart\tend\n\xff\xfe\x80\x81\n")

    with pytest.raises(fds.DepthMeasurementError):
        fds.measure_depths([binary], pipeline)
