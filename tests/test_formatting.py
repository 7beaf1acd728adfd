"""
Tests for classifier reference formatting.

Tests cover:
- Taxon name sanitizing and lineage building
- Per-classifier output layouts
- Record filtering on missing taxids and missing ranks
- Optional JSON report of the counts
"""

import json

import pytest

from boldkit.formatting import (
    CLASSIFIER_FILES,
    build_lineage,
    format_references,
    sanitize_taxon,
    sintax_lineage,
)


NODES = [
    (1, 1, "no rank", "root"),
    (2, 1, "kingdom", "Animalia"),
    (3, 2, "phylum", "Arthropoda"),
    (4, 3, "class", "Insecta"),
    (5, 4, "order", "Diptera"),
    (6, 5, "family", "Culicidae"),
    (7, 6, "genus", "Aedes"),
    (8, 7, "species", "Aedes aegypti"),
    (9, 6, "species", "Culicidae sp. X"),
]

LINEAGE_NAMES = ["Animalia", "Arthropoda", "Insecta", "Diptera", "Culicidae", "Aedes", "Aedes aegypti"]


@pytest.fixture
def taxdump_dir(tmp_path):
    directory = tmp_path / "taxdump"
    directory.mkdir()
    (directory / "nodes.dmp").write_text(
        "".join(f"{t}\t|\t{p}\t|\t{r}\t|\n" for t, p, r, _ in NODES)
    )
    (directory / "names.dmp").write_text(
        "".join(f"{t}\t|\t{n}\t|\t\t|\tscientific name\t|\n" for t, _, _, n in NODES)
    )
    # R3 sits directly under the family, so it has no genus
    (directory / "taxid.map").write_text("R1\t8\nR2\t8\nR3\t9\n")
    return directory


@pytest.fixture
def fasta(tmp_path):
    path = tmp_path / "train.fasta"
    path.write_text(">R1\nACGT\n>R2 extra words\nTTGG\n>R3\nCCAA\n>R4\nGGGG\n")
    return path


class TestLineageHelpers:
    """Test name sanitizing and lineage assembly."""

    def test_sanitize_taxon(self):
        assert sanitize_taxon(" Aus;bus,cus:dus|eus\tfus ") == "Aus_bus_cus_dus_eus_fus"
        assert sanitize_taxon("Aedes aegypti") == "Aedes aegypti"

    def test_build_lineage(self):
        lineage = {"genus": "Aedes", "species": "Aedes aegypti", "kingdom": "Animalia"}
        assert build_lineage(lineage, ["kingdom", "genus"]) == ["Animalia", "Aedes"]

    def test_build_lineage_missing_rank(self):
        assert build_lineage({"genus": "Aedes"}, ["kingdom", "genus"]) == []

    def test_build_lineage_without_required_ranks(self):
        lineage = {"species": "Aedes aegypti", "genus": "Aedes", "tribe": "Aedini"}
        assert build_lineage(lineage, []) == ["Aedes", "Aedes aegypti"]

    def test_sintax_lineage(self):
        assert sintax_lineage(["Animalia", "Arthropoda"]) == "d:Animalia,p:Arthropoda"


class TestFormatReferences:
    """Test reference files written for each classifier."""

    def test_all_classifiers(self, fasta, taxdump_dir, tmp_path):
        out_dir = tmp_path / "formatted"
        stats = format_references(fasta, out_dir, taxdump_dir, classifiers=list(CLASSIFIER_FILES))

        assert stats.to_dict() == {"total": 4, "written": 2, "missing_taxid": 1, "missing_ranks": 1}
        for files in CLASSIFIER_FILES.values():
            for name in files:
                assert (out_dir / name).exists()

        assert (out_dir / "blast.fasta").read_text() == ">R1\nACGT\n>R2\nTTGG\n"
        assert (out_dir / "blast_seqid2taxid.map").read_text() == "R1\t8\nR2\t8\n"
        assert (out_dir / "kraken2.fasta").read_text().startswith(">R1|kraken:taxid|8\nACGT\n")
        assert (out_dir / "sintax.fasta").read_text().splitlines()[0] == (
            ">R1;tax=d:Animalia,p:Arthropoda,c:Insecta,o:Diptera,"
            "f:Culicidae,g:Aedes,s:Aedes aegypti"
        )
        assert (out_dir / "rdp_lineage.tsv").read_text().splitlines()[0] == (
            "R1\t" + "\t".join(LINEAGE_NAMES)
        )
        assert (out_dir / "idtaxa_lineage.tsv").read_text().splitlines()[0] == (
            "R1\tRoot;" + ";".join(LINEAGE_NAMES)
        )
        assert (out_dir / "protax_seqid2tax.tsv").read_text().splitlines()[1] == (
            "R2\t" + ";".join(LINEAGE_NAMES)
        )

    def test_only_selected_classifiers_written(self, fasta, taxdump_dir, tmp_path):
        out_dir = tmp_path / "formatted"
        format_references(fasta, out_dir, taxdump_dir, classifiers=["RDP", "rdp"])
        assert sorted(p.name for p in out_dir.iterdir()) == ["rdp_lineage.tsv", "rdp_seqs.fasta"]

    def test_require_ranks_relaxed(self, fasta, taxdump_dir, tmp_path):
        stats = format_references(
            fasta, tmp_path / "formatted", taxdump_dir,
            classifiers=["protax"], require_ranks=["family", "species"],
        )
        assert stats.written == 3
        lines = (tmp_path / "formatted" / "protax_seqid2tax.tsv").read_text().splitlines()
        assert lines[2] == "R3\tCulicidae;Culicidae sp. X"

    def test_taxid_map_override(self, fasta, taxdump_dir, tmp_path):
        override = tmp_path / "override.map"
        override.write_text("R4\t8\n")
        stats = format_references(
            fasta, tmp_path / "formatted", taxdump_dir,
            classifiers=["blast"], taxid_map=override,
        )
        assert stats.written == 1
        assert stats.missing_taxid == 3

    def test_json_report(self, fasta, taxdump_dir, tmp_path):
        report = tmp_path / "reports" / "format.json"
        format_references(
            fasta, tmp_path / "formatted", taxdump_dir,
            classifiers=["blast"], report_path=report,
        )
        assert json.loads(report.read_text()) == {
            "total": 4, "written": 2, "missing_taxid": 1, "missing_ranks": 1,
        }

    def test_no_report_by_default(self, fasta, taxdump_dir, tmp_path):
        format_references(fasta, tmp_path / "formatted", taxdump_dir, classifiers=["blast"])
        assert sorted(p.name for p in tmp_path.iterdir()) == ["formatted", "taxdump", "train.fasta"]

    def test_unknown_classifier(self, fasta, taxdump_dir, tmp_path):
        with pytest.raises(ValueError, match="Unknown classifier"):
            format_references(fasta, tmp_path / "formatted", taxdump_dir, classifiers=["qiime"])

    def test_empty_classifier_list(self, fasta, taxdump_dir, tmp_path):
        with pytest.raises(ValueError, match="must not be empty"):
            format_references(fasta, tmp_path / "formatted", taxdump_dir, classifiers=[" "])
