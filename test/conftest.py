import gzip

import numpy as np
import pandas as pd
import pytest
from Bio.motifs import jaspar

from scatac_data_processing.io.tenx import make_peaks_object

CHROM_SIZES = {"chr1": 20000, "chr2": 10000}

GTF_GENES = [
    # chrom, start (1-based), end, strand, gene_id, gene_name, gene_type
    ("chr1", 3001, 4000, "+", "ENSG01", "GENE1", "protein_coding"),
    ("chr1", 8001, 9000, "-", "ENSG02", "GENE2", "protein_coding"),
    ("chr1", 15001, 16000, "+", "ENSG03", "LNC1", "lncRNA"),
    ("chr2", 2001, 5000, "+", "ENSG04", "GENE4", "protein_coding"),
]


def random_sequence(length, rng):
    return "".join(rng.choice(list("ACGT"), size=length))


def write_fragments(path, rows):
    """Write (chrom, start, end, barcode, count) rows as a gzipped fragment file."""
    with gzip.open(path, "wt") as f:
        f.write("# id=test\n")
        for chrom, start, end, barcode, count in rows:
            f.write(f"{chrom}\t{start}\t{end}\t{barcode}\t{count}\n")
    return str(path)


@pytest.fixture(scope="session")
def genome_sequences():
    rng = np.random.default_rng(0)
    return {chrom: random_sequence(size, rng) for chrom, size in CHROM_SIZES.items()}


@pytest.fixture(scope="session")
def fasta_file(tmp_path_factory, genome_sequences):
    path = tmp_path_factory.mktemp("genome") / "test.fa"
    with open(path, "w") as f:
        for chrom, seq in genome_sequences.items():
            f.write(f">{chrom}\n")
            for i in range(0, len(seq), 60):
                f.write(seq[i:i + 60] + "\n")
    return str(path)


@pytest.fixture
def gtf_file(tmp_path):
    path = tmp_path / "genes.gtf"
    with open(path, "w") as f:
        for chrom, start, end, strand, gene_id, name, gene_type in GTF_GENES:
            attributes = f'gene_id "{gene_id}"; gene_name "{name}"; gene_type "{gene_type}";'
            f.write("\t".join([chrom, "TEST", "gene", str(start), str(end), ".", strand, ".", attributes]) + "\n")
    return str(path)


@pytest.fixture
def fragment_rows():
    """
    Fragments of three cells on chr1:
    AAAC-1 has nucleosome-free fragments piled up near 5000,
    AAAG-1 mostly mono-nucleosomal fragments in the flanks,
    AAAT-1 spread fragments over the whole chromosome.
    """
    rng = np.random.default_rng(1)
    rows = []
    for _ in range(10):
        rows.append(("chr1", 4990, 5090, "AAAC-1", 1))
    rows.append(("chr1", 4010, 4200, "AAAC-1", 1))
    for _ in range(5):
        rows.append(("chr1", 4020, 4300, "AAAG-1", 1))
    rows.append(("chr1", 5000, 5300, "AAAG-1", 1))
    for start in rng.integers(0, 19000, size=40):
        rows.append(("chr1", int(start), int(start) + int(rng.integers(50, 400)), "AAAT-1", 1))
    rows.append(("chr1", 1500, 1700, "OTHER-1", 1))
    return rows


@pytest.fixture
def fragment_file(tmp_path, fragment_rows):
    return write_fragments(tmp_path / "fragments.tsv.gz", fragment_rows)


@pytest.fixture
def peaks_adata(fragment_file):
    """Three cells over four peaks, with the fragment file registered."""
    counts = np.array([
        [4, 0, 2, 0],
        [1, 3, 0, 0],
        [2, 2, 1, 5],
    ])
    regions = ["chr1:4900-5100", "chr1:4000-4400", "chr1:10000-12000", "chr1:15000-16000"]
    return make_peaks_object(counts, ["AAAC-1", "AAAG-1", "AAAT-1"], regions, sample="s1", fragments=fragment_file)


def random_peaks_object(n_cells=60, n_peaks=200, sample="s1", seed=0, rate=0.3):
    """Poisson counts over evenly spaced chr1 peaks."""
    rng = np.random.default_rng(seed)
    counts = rng.poisson(rate, size=(n_cells, n_peaks))
    counts[np.arange(n_cells), np.arange(n_cells) % n_peaks] += 1
    regions = [f"chr1-{i * 1000}-{i * 1000 + 500}" for i in range(n_peaks)]
    barcodes = [f"CELL{i}-1" for i in range(n_cells)]
    return make_peaks_object(counts, barcodes, regions, sample=sample)


@pytest.fixture
def random_peaks():
    return random_peaks_object()


@pytest.fixture
def metadata_csv(tmp_path):
    metadata = pd.DataFrame({
        "barcode": ["NO_BARCODE", "AAAC-1", "AAAG-1", "AAAT-1", "TTTT-1"],
        "is__cell_barcode": [0, 1, 1, 1, 0],
        "passed_filters": [100, 50, 40, 30, 2],
        "peak_region_fragments": [10, 25, 10, 15, 1],
        "blacklist_region_fragments": [0, 1, 0, 3, 0],
    })
    path = tmp_path / "singlecell.csv"
    metadata.to_csv(path, index=False)
    return str(path)


def random_jaspar_motifs(n=5, length=8, seed=0, strength=50):
    """Bio.motifs JASPAR records with a random consensus each."""
    rng = np.random.default_rng(seed)
    motifs = []
    for i in range(n):
        counts = {base: [10.0] * length for base in "ACGT"}
        for position, base in enumerate(rng.choice(list("ACGT"), size=length)):
            counts[base][position] = float(strength)
        motifs.append(jaspar.Motif(matrix_id=f"MA{i + 1:04d}.1", name=f"TF{i + 1}", counts=counts))
    return motifs


def two_group_counts(n_cells=60, n_peaks=60, seed=0, high=2.0, low=0.2):
    """First half of the cells open at the first half of the peaks, second half at the rest."""
    rng = np.random.default_rng(seed)
    first = np.arange(n_cells) < n_cells // 2
    rate = np.where(first[:, None] == (np.arange(n_peaks) < n_peaks // 2)[None, :], high, low)
    counts = rng.poisson(rate)
    counts[np.arange(n_cells), np.arange(n_cells) % n_peaks] += 1
    return counts, first
