"""
End-to-end tests: extract with curation, then split, through the CLI.

The dataset is one species spread over four barcodes. One record carries a
bare epithet ("sapiens") that only curation turns into "Homo sapiens"; that
record also holds a single-record barcode that ends up in seen_train, so
the training split depends on the curated label.
"""

import json
from pathlib import Path

import pytest

from boldkit.cli import main


BOLD_HEADER = [
    "processid", "bin_uri", "kingdom", "phylum", "class", "order", "family",
    "subfamily", "tribe", "genus", "species", "marker_code",
]

LINEAGE = ["Animalia", "Chordata", "Mammalia", "Primates", "Hominidae", "Homininae", "Hominini", "Homo"]

# (processid, species, sequence)
RECORDS = (
    [(f"P{i}", "Homo sapiens", "ACGTACGTCC") for i in range(1, 7)]
    + [(f"P{i}", "Homo sapiens", "ACGTACGTAA") for i in range(7, 10)]
    + [("P10", "sapiens", "ACGTACGTGG"), ("P11", "Homo sapiens", "ACGTACGTTT")]
)

NODES = [
    (1, 1, "no rank", "root"),
    (2, 1, "kingdom", "Animalia"),
    (3, 2, "phylum", "Chordata"),
    (4, 3, "class", "Mammalia"),
    (5, 4, "order", "Primates"),
    (6, 5, "family", "Hominidae"),
    (7, 6, "genus", "Homo"),
    (8, 7, "species", "Homo sapiens"),
]


@pytest.fixture
def workspace(tmp_path):
    bold = tmp_path / "BOLD_Public.tsv"
    lines = ["\t".join(BOLD_HEADER)]
    for pid, species, _ in RECORDS:
        lines.append("\t".join([pid, "BOLD:AAA0001", *LINEAGE, species, "COI-5P"]))
    bold.write_text("\n".join(lines) + "\n")

    fasta = tmp_path / "COI-5P.fasta"
    fasta.write_text("".join(f">{pid}\n{seq}\n" for pid, _, seq in RECORDS))

    taxdump = tmp_path / "bold-taxdump"
    taxdump.mkdir()
    (taxdump / "nodes.dmp").write_text("".join(f"{t}\t|\t{p}\t|\t{r}\t|\n" for t, p, r, _ in NODES))
    (taxdump / "names.dmp").write_text(
        "".join(f"{t}\t|\t{n}\t|\t\t|\tscientific name\t|\n" for t, _, _, n in NODES)
    )
    (taxdump / "taxid.map").write_text("".join(f"{pid}\t8\n" for pid, _, _ in RECORDS))
    return tmp_path


def run_extract(workspace: Path, protocol: str) -> Path:
    output = workspace / f"taxonkit_input.{protocol}.tsv"
    status = main([
        "extract",
        "--input", str(workspace / "BOLD_Public.tsv"),
        "--output", str(output),
        "--curate-protocol", protocol,
        "--curate-report", str(workspace / "reports" / "curation.json"),
        "--curate-audit", str(workspace / "reports" / "audit.tsv"),
    ])
    assert status == 0
    return output


def run_split(workspace: Path, taxonkit_input: Path, out_name: str) -> Path:
    out_dir = workspace / out_name
    status = main([
        "split",
        "--input", str(workspace / "COI-5P.fasta"),
        "--taxonkit-input", str(taxonkit_input),
        "--taxdump-dir", str(workspace / "bold-taxdump"),
        "--outdir", str(out_dir),
        "--classifier", "blast,sintax",
    ])
    assert status == 0
    return out_dir


def fasta_ids(path: Path):
    return [line[1:] for line in path.read_text().splitlines() if line.startswith(">")]


class TestCuratedPipeline:
    """extract --curate-protocol bioscan-5m followed by split."""

    def test_extract_report_and_audit(self, workspace):
        output = run_extract(workspace, "bioscan-5m")
        assert "P10" in output.read_text()

        report = json.loads((workspace / "reports" / "curation.json").read_text())
        assert report["stats"]["rows_total"] == 11
        assert report["stats"]["rows_changed"] == 1
        assert report["stats"]["species_epithet_only_fix"] == 1
        assert report["bin_summary"] == {"observed": 1, "canonical": 1, "conflicted": 0}

        audit = (workspace / "reports" / "audit.tsv").read_text().splitlines()
        assert len(audit) == 2
        assert audit[1].startswith("P10\tBOLD:AAA0001\tHomo\tsapiens\t")

    def test_split_uses_curated_labels(self, workspace):
        out_dir = run_split(workspace, run_extract(workspace, "bioscan-5m"), "libraries")

        assert fasta_ids(out_dir / "seen_test.fasta") == [f"P{i}" for i in range(1, 7)]
        assert fasta_ids(out_dir / "seen_val.fasta") == ["P7", "P8", "P9"]
        assert fasta_ids(out_dir / "seen_train.fasta") == ["P10", "P11"]
        assert fasta_ids(out_dir / "pretrain.fasta") == []

        report = json.loads((out_dir / "split_report.json").read_text())
        assert report["classifiers"] == ["blast", "sintax"]
        assert report["stats"]["seen_classes"] == 1
        assert report["stats"]["total_classes"] == 1

        formatted = out_dir / "formatted"
        assert sorted(p.name for p in formatted.iterdir()) == [
            "blast.fasta", "blast_seqid2taxid.map", "sintax.fasta",
        ]
        assert (formatted / "blast_seqid2taxid.map").read_text() == "P10\t8\nP11\t8\n"
        assert (out_dir / "taxdump_pruned" / "taxid.map").read_text() == "P10\t8\nP11\t8\n"

    def test_rerun_is_reproducible(self, workspace):
        taxonkit_input = run_extract(workspace, "bioscan-5m")
        first = run_split(workspace, taxonkit_input, "run1")
        second = run_split(workspace, taxonkit_input, "run2")
        for name in ("seen_test.fasta", "seen_val.fasta", "seen_train.fasta", "pretrain.fasta"):
            assert (first / name).read_bytes() == (second / name).read_bytes()


class TestUncuratedPipeline:
    """Without curation the bare epithet forms its own class."""

    def test_epithet_record_not_in_training(self, workspace):
        taxonkit_input = run_extract(workspace, "none")
        assert not (workspace / "reports" / "curation.json").exists()
        assert not (workspace / "reports" / "audit.tsv").exists()

        # "sapiens" is a one-record class outside the seen set, so only the
        # other single-record barcode is left for training
        out_dir = workspace / "libraries"
        status = main([
            "split",
            "--input", str(workspace / "COI-5P.fasta"),
            "--taxonkit-input", str(taxonkit_input),
            "--taxdump-dir", str(workspace / "bold-taxdump"),
            "--outdir", str(out_dir),
        ])
        assert status == 0
        assert fasta_ids(out_dir / "seen_train.fasta") == ["P11"]

        report = json.loads((out_dir / "split_report.json").read_text())
        assert report["stats"]["total_classes"] == 2


class TestExistingOutput:
    """extract skips an existing table unless --force is given."""

    def test_skip_and_force(self, workspace):
        output = workspace / "taxonkit_input.tsv"
        output.write_text("old\n")
        args = ["extract", "--input", str(workspace / "BOLD_Public.tsv"), "--output", str(output)]

        assert main(args) == 0
        assert output.read_text() == "old\n"

        assert main(args + ["--force"]) == 0
        assert output.read_text().startswith("kingdom\tphylum")


class TestMarkerSplit:
    """split without --input walks the marker list."""

    def test_markers_from_directory(self, workspace):
        taxonkit_input = run_extract(workspace, "bioscan-5m")
        status = main([
            "split",
            "--markers", "COI-5P",
            "--marker-dir", str(workspace),
            "--taxonkit-input", str(taxonkit_input),
            "--taxdump-dir", str(workspace / "bold-taxdump"),
            "--outdir", str(workspace / "libraries"),
        ])
        assert status == 0
        assert fasta_ids(workspace / "libraries" / "COI-5P" / "seen_train.fasta") == ["P10", "P11"]

    def test_missing_marker(self, workspace):
        status = main([
            "split",
            "--markers", "COI-5P,ITS",
            "--marker-dir", str(workspace),
            "--taxonkit-input", str(run_extract(workspace, "none")),
            "--taxdump-dir", str(workspace / "bold-taxdump"),
            "--outdir", str(workspace / "libraries"),
        ])
        assert status == 1
        assert not (workspace / "libraries").exists()


class TestFormatCommand:
    """format on its own, with a JSON report."""

    def test_format_report(self, workspace):
        report = workspace / "format.json"
        status = main([
            "format",
            "--input", str(workspace / "COI-5P.fasta"),
            "--taxdump-dir", str(workspace / "bold-taxdump"),
            "--outdir", str(workspace / "refs"),
            "--classifier", "kraken2",
            "--report", str(report),
        ])
        assert status == 0
        assert json.loads(report.read_text()) == {
            "total": 11, "written": 11, "missing_taxid": 0, "missing_ranks": 0,
        }
        assert (workspace / "refs" / "kraken2.fasta").read_text().startswith(">P1|kraken:taxid|8\n")
