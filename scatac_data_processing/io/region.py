import re

import numpy as np
import pandas as pd
from pyfaidx import Fasta
from tqdm import tqdm

from scatac_data_processing.io.sequence import DNASequence, DNASequenceCollection

REGION_COLUMNS = ["Chromosome", "Start", "End"]


def parse_region_names(names, sep=None):
    """
    Split region keys such as chr1:100-200 or chr1-100-200 into a BED-like dataframe.
    """
    names = pd.Index(names).astype(str)
    if sep is None:
        parts = names.str.extract(r"^(?P<Chromosome>.+?)[:\-_](?P<Start>\d+)[\-_](?P<End>\d+)$")
    else:
        parts = names.to_series().str.split(sep, expand=True, n=2)
        parts.columns = REGION_COLUMNS
    if parts.isnull().values.any():
        bad = names[parts.isnull().any(axis=1).values][:5].tolist()
        raise ValueError(f"Cannot parse region names, e.g. {bad}")
    parts.index = names
    parts["Start"] = parts["Start"].astype(np.int64)
    parts["End"] = parts["End"].astype(np.int64)
    return parts[REGION_COLUMNS]


def region_names(df, sep="-"):
    """chrom-start-end keys of a BED-like dataframe."""
    return (df["Chromosome"].astype(str) + sep + df["Start"].astype(str) + sep + df["End"].astype(str)).values


def read_bed(bed_file):
    """Read the first three columns of a BED file."""
    bed = pd.read_csv(bed_file, sep="\t", header=None, comment="#", usecols=[0, 1, 2], names=REGION_COLUMNS)
    return bed[~bed.Chromosome.astype(str).str.startswith(("track", "browser"))].reset_index(drop=True)


class Genome(object):
    def __init__(self, assembly: str, fasta_file: str) -> None:
        self.fasta_file = fasta_file
        self.assembly = assembly
        self.genome_seq = Fasta(fasta_file)
        self.chrom_sizes = {chrom: len(self.genome_seq[chrom]) for chrom in self.genome_seq.keys()}
        if list(self.genome_seq.keys())[0].startswith("chr"):
            self.chr_suffix = "chr"
        else:
            self.chr_suffix = ""

    def __repr__(self) -> str:
        return f"Genome: {self.assembly} with fasta file: {self.fasta_file}"

    def normalize_chromosome(self, chromosome):
        """
        Normalize chromosome name
        """
        if str(chromosome).startswith("chr"):
            chromosome = str(chromosome)[3:]

        return self.chr_suffix + str(chromosome)

    def get_sequence(self, chromosome, start, end, strand="+"):
        """
        Get the sequence of the genomic region
        """
        chromosome = self.normalize_chromosome(chromosome)
        if chromosome not in self.chrom_sizes:
            raise KeyError(f"{chromosome} is not in {self.fasta_file}")
        start = max(int(start), 0)
        end = min(int(end), self.chrom_sizes[chromosome])
        if strand == "-":
            return DNASequence(
                self.genome_seq[chromosome][start:end].reverse.complement.seq,
                header=f"{chromosome}-{start}-{end}",
            )
        else:
            return DNASequence(
                self.genome_seq[chromosome][start:end].seq,
                header=f"{chromosome}-{start}-{end}",
            )


class GenomicRegion(object):
    def __init__(
        self, genome: Genome, chromosome: str, start: int, end: int, strand: str = "+"
    ):
        self.genome = genome
        self.chromosome = chromosome
        self.start = start
        self.end = end
        self.strand = strand

    def __repr__(self) -> str:
        return f"[{self.genome.assembly}]{self.chromosome}:{self.start}-{self.end}"

    @property
    def sequence(self):
        """
        Get the sequence of the genomic region
        """
        return self.genome.get_sequence(
            self.chromosome, self.start, self.end, self.strand
        )

    def get_flanking_region(self, upstream, downstream):
        """
        Get the flanking region of the genomic region
        """
        return GenomicRegion(
            self.genome,
            self.chromosome,
            self.start - upstream,
            self.end + downstream,
            self.strand,
        )


class GenomicRegionCollection(object):
    """List of GenomicRegion objects backed by a BED-like dataframe"""

    def __init__(self, genome, df):
        missing = [c for c in REGION_COLUMNS if c not in df.columns]
        if missing:
            raise ValueError(f"Region dataframe lacks columns {missing}")
        self.genome = genome
        self.df = df.reset_index(drop=True)

    def __repr__(self) -> str:
        return f"GenomicRegionCollection with {len(self.df)} regions"

    def __len__(self):
        return len(self.df)

    # generator of GenomicRegion objects
    def __iter__(self):
        strands = self.df["Strand"] if "Strand" in self.df.columns else ["+"] * len(self.df)
        for chrom, start, end, strand in zip(self.df["Chromosome"], self.df["Start"], self.df["End"], strands):
            yield GenomicRegion(self.genome, chrom, start, end, strand)

    def collect_sequence(self, upstream=0, downstream=0, progress=False):
        """
        Collect the sequence of the genomic regions
        """
        regions = iter(self)
        if progress:
            regions = tqdm(regions, total=len(self), desc="Fetching sequences")
        return DNASequenceCollection([
            region.get_flanking_region(upstream, downstream).sequence for region in regions
        ])


def is_standard_chromosome(chromosomes):
    """Boolean mask of chromosomes without an alt/random/Un/EBV suffix."""
    pattern = re.compile(r"^(chr)?([0-9]+|X|Y|M|MT)$")
    return np.array([bool(pattern.match(str(c))) for c in chromosomes])
