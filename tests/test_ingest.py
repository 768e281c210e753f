import gzip

import numpy as np
import pytest
from scipy import sparse

from conftest import make_counts, write_triplet
from sncompare.errors import IngestionError, PipelineError
from sncompare.ingest import read_10x_directory, read_10x_triplet
from sncompare.protocols import FileData


def test_reads_triplet_directory_as_cells_by_genes(tmp_path, rng):
    src = make_counts(rng, np.full(8, 3.0), 12)
    write_triplet(tmp_path / "wt", src)

    adata = read_10x_directory(tmp_path / "wt", sample="WT", min_cells=0, min_features=0)

    assert adata.shape == (12, 8)
    assert list(adata.obs_names) == list(src.obs_names)
    assert list(adata.var_names) == list(src.var_names)
    assert (adata.obs["sample"] == "WT").all()
    np.testing.assert_array_equal(adata.X.toarray(), src.X.toarray())
    assert adata.var["gene_ids"].iloc[0] == "ENSG00000"


def test_reads_gzip_compressed_triplet(tmp_path, rng):
    src = make_counts(rng, np.full(5, 4.0), 10)
    write_triplet(tmp_path / "gz", src, compress=True)

    adata = read_10x_directory(tmp_path / "gz", sample="TG", min_cells=0, min_features=0)

    assert adata.shape == (10, 5)
    np.testing.assert_array_equal(adata.X.toarray(), src.X.toarray())


def test_in_memory_sources(tmp_path, rng):
    src = make_counts(rng, np.full(4, 5.0), 6)
    d = write_triplet(tmp_path / "mem", src)
    matrix = FileData(gzip.compress((d / "matrix.mtx").read_bytes()), "matrix.mtx.gz")
    barcodes = FileData((d / "barcodes.tsv").read_bytes(), "barcodes.tsv")
    features = FileData((d / "features.tsv").read_bytes(), "features.tsv")

    adata = read_10x_triplet(matrix, barcodes, features, sample="S", min_cells=0, min_features=0)

    assert adata.shape == (6, 4)


def test_barcode_count_mismatch_names_the_barcode_file(tmp_path, rng):
    src = make_counts(rng, np.full(4, 5.0), 6)
    d = write_triplet(tmp_path / "bad", src)
    (d / "barcodes.tsv").write_text("only\none\n")

    with pytest.raises(IngestionError) as excinfo:
        read_10x_directory(d, sample="bad", min_cells=0, min_features=0)

    err = excinfo.value
    assert isinstance(err, PipelineError)
    assert err.stage == "ingest"
    assert err.input_name.endswith("barcodes.tsv")


def test_feature_count_mismatch_names_the_feature_file(tmp_path, rng):
    src = make_counts(rng, np.full(4, 5.0), 6)
    d = write_triplet(tmp_path / "bad", src)
    (d / "features.tsv").write_text("g0\ng1\n")

    with pytest.raises(IngestionError) as excinfo:
        read_10x_directory(d, sample="bad", min_cells=0, min_features=0)
    assert excinfo.value.input_name.endswith("features.tsv")


def test_missing_directory_and_missing_file(tmp_path):
    with pytest.raises(IngestionError):
        read_10x_directory(tmp_path / "nope", sample="x")

    (tmp_path / "empty").mkdir()
    with pytest.raises(IngestionError, match="matrix"):
        read_10x_directory(tmp_path / "empty", sample="x")


def test_detection_thresholds_drop_genes_then_cells(tmp_path):
    # g2 seen in one cell only; cell c3 has a single detected gene.
    X = np.array([
        [1, 1, 0],
        [2, 1, 0],
        [1, 3, 5],
        [0, 4, 0],
    ], dtype=np.int32)
    src = make_counts(np.random.default_rng(0), np.ones(3), 4)
    src.X = sparse.csr_matrix(X)
    write_triplet(tmp_path / "thr", src)

    adata = read_10x_directory(tmp_path / "thr", sample="S", min_cells=2, min_features=2)

    assert list(adata.var_names) == ["g0", "g1"]
    assert list(adata.obs_names) == ["c0", "c1", "c2"]
    stats = adata.uns["ingest_stats"]
    assert stats["genes_before"] == 3 and stats["genes_after"] == 2
    assert stats["cells_after"] == 3


def test_nothing_left_after_filtering_is_fatal(tmp_path, rng):
    src = make_counts(rng, np.full(3, 1.0), 5)
    write_triplet(tmp_path / "tiny", src)

    with pytest.raises(IngestionError) as excinfo:
        read_10x_directory(tmp_path / "tiny", sample="tiny", min_cells=0, min_features=100)
    assert excinfo.value.input_name == "tiny"
