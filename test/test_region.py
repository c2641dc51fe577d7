import numpy as np
import pandas as pd
import pytest

from scatac_data_processing.io.region import (Genome, GenomicRegionCollection, is_standard_chromosome,
                                              parse_region_names, read_bed, region_names)
from scatac_data_processing.io.sequence import DNASequence, DNASequenceCollection

COMPLEMENT = str.maketrans("ACGT", "TGCA")


def test_parse_region_names():
    regions = parse_region_names(["chr1:100-200", "chr2-5-10", "chrX_30_40"])
    assert regions.Chromosome.tolist() == ["chr1", "chr2", "chrX"]
    assert regions.Start.tolist() == [100, 5, 30]
    assert regions.End.tolist() == [200, 10, 40]
    assert region_names(regions).tolist() == ["chr1-100-200", "chr2-5-10", "chrX-30-40"]


def test_parse_bad_region_names():
    with pytest.raises(ValueError):
        parse_region_names(["chr1:100-200", "not_a_region"])


def test_standard_chromosomes():
    mask = is_standard_chromosome(["chr1", "chrX", "chrM", "12", "chrUn_KI270302v1", "chr1_KI270706v1_random"])
    assert mask.tolist() == [True, True, True, True, False, False]


def test_read_bed(tmp_path):
    path = tmp_path / "blacklist.bed"
    path.write_text("chr1\t10\t20\tHigh Signal Region\nchr2\t30\t40\tLow Mappability\n")
    bed = read_bed(str(path))
    assert bed.Chromosome.tolist() == ["chr1", "chr2"]
    assert bed.End.tolist() == [20, 40]


def test_genome_get_sequence(fasta_file, genome_sequences):
    genome = Genome("test", fasta_file)
    assert genome.chrom_sizes == {"chr1": 20000, "chr2": 10000}
    assert genome.normalize_chromosome("1") == "chr1"
    assert str(genome.get_sequence("chr1", 100, 150)) == genome_sequences["chr1"][100:150]
    assert str(genome.get_sequence("1", 100, 150)) == genome_sequences["chr1"][100:150]
    reverse = genome_sequences["chr1"][100:150].translate(COMPLEMENT)[::-1]
    assert str(genome.get_sequence("chr1", 100, 150, strand="-")) == reverse
    # clipped at the chromosome end
    assert len(genome.get_sequence("chr2", 9990, 10100)) == 10
    with pytest.raises(KeyError):
        genome.get_sequence("chr3", 0, 10)


def test_region_collection(fasta_file, genome_sequences):
    genome = Genome("test", fasta_file)
    regions = GenomicRegionCollection(genome, parse_region_names(["chr1-0-100", "chr2-500-800"]))
    assert len(regions) == 2
    sequences = regions.collect_sequence()
    assert sequences.lengths.tolist() == [100, 300]
    assert sequences.to_list()[1] == genome_sequences["chr2"][500:800]
    with pytest.raises(ValueError):
        GenomicRegionCollection(genome, pd.DataFrame({"Chromosome": ["chr1"], "Start": [0]}))


def test_gc_content():
    sequences = DNASequenceCollection([DNASequence("GGCC"), DNASequence("ATGC"), DNASequence(b"aaat")])
    assert np.allclose(sequences.gc_content, [1.0, 0.5, 0.0])
