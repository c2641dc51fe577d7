import logging
import os

import numpy as np
import pandas as pd
from pyranges import PyRanges as pr
from pyranges import read_gtf

logger = logging.getLogger(__name__)

GENE_COLUMNS = ['Chromosome', 'Start', 'End', 'Strand', 'gene_name', 'gene_id', 'gene_type']


class Gencode(object):
    """Read a gene annotation GTF (GENCODE or Ensembl), keep one row per gene.
    A feather copy of the gene table is written to `cache_dir` (next to the GTF
    by default) and reused; it is skipped when the directory is not writable."""

    def __init__(self, gtf_file, assembly="hg38", cache=True, cache_dir=None):
        super(Gencode, self).__init__()
        self.assembly = assembly
        self.gtf_file = gtf_file
        if cache_dir is None:
            cache_dir = os.path.dirname(os.path.abspath(gtf_file))
        feather = os.path.join(cache_dir, os.path.basename(gtf_file) + ".genes.feather")

        if cache and os.path.exists(feather):
            self.gtf = pd.read_feather(feather)
        else:
            if not os.path.exists(gtf_file):
                raise FileNotFoundError(f"Annotation {gtf_file} does not exist")
            gtf = read_gtf(gtf_file).as_df()
            self.gtf = self.gene_table(gtf)
            if cache:
                self.write_cache(feather)
        logger.info("Loaded %d genes from %s", len(self.gtf), gtf_file)

    def write_cache(self, feather):
        cache_dir = os.path.dirname(feather)
        os.makedirs(cache_dir, exist_ok=True)
        if not os.access(cache_dir, os.W_OK):
            logger.warning("%s is not writable, the gene table is not cached", cache_dir)
            return None
        self.gtf.to_feather(feather)
        return feather

    def __repr__(self) -> str:
        return f"Gencode({self.gtf_file}) with {len(self.gtf)} genes"

    @staticmethod
    def gene_table(gtf):
        """Gene rows of a GTF dataframe, with a gene_type column whatever the source."""
        genes = gtf[gtf.Feature == 'gene'].copy()
        if 'gene_type' not in genes.columns:
            genes['gene_type'] = genes['gene_biotype'] if 'gene_biotype' in genes.columns else 'unknown'
        if 'gene_name' not in genes.columns:
            genes['gene_name'] = genes['gene_id']
        genes['gene_name'] = genes['gene_name'].fillna(genes['gene_id'])
        genes['Chromosome'] = genes['Chromosome'].astype(str)
        genes['Strand'] = genes['Strand'].astype(str)
        return (genes[GENE_COLUMNS].drop_duplicates('gene_id')
                .sort_values(['Chromosome', 'Start'], kind='mergesort')
                .reset_index(drop=True))

    def genes(self, biotypes=None):
        genes = self.gtf
        if biotypes:
            genes = genes[genes.gene_type.isin(biotypes)]
        return genes.reset_index(drop=True)

    def tss(self, biotypes=None):
        """1-bp TSS of every gene, strand-aware."""
        genes = self.genes(biotypes)
        position = np.where(genes.Strand == '-', genes.End - 1, genes.Start)
        tss = genes.copy()
        tss['Start'] = position
        tss['End'] = position + 1
        return tss

    def gene_bodies(self, upstream=2000, downstream=0, biotypes=None):
        """Gene bodies extended upstream/downstream relative to the strand."""
        genes = self.genes(biotypes).copy()
        minus = (genes.Strand == '-').values
        start = genes.Start.values - np.where(minus, downstream, upstream)
        end = genes.End.values + np.where(minus, upstream, downstream)
        genes['Start'] = np.clip(start, 0, None)
        genes['End'] = end
        return genes

    def get_gene(self, gene_name):
        df = self.gtf[self.gtf.gene_name == gene_name]
        if len(df) == 0:
            raise KeyError(f"{gene_name} is not in {self.gtf_file}")
        return df.iloc[0]

    def closest_gene(self, regions, biotypes=None):
        """
        Closest gene body for each region, with the distance in bp (0 when overlapping).
        `regions` is a BED-like dataframe; its index labels the output.
        """
        query = pd.DataFrame({
            'Chromosome': regions['Chromosome'].astype(str).values,
            'Start': regions['Start'].values.astype(np.int64),
            'End': regions['End'].values.astype(np.int64),
            'query_idx': np.arange(len(regions)),
        })
        genes = self.genes(biotypes)[['Chromosome', 'Start', 'End', 'gene_name', 'gene_id', 'gene_type']]
        closest = pr(query).nearest(pr(genes))
        columns = ['gene_name', 'gene_id', 'gene_type', 'Distance']
        if len(closest) == 0:
            return pd.DataFrame(index=regions.index, columns=columns)
        closest = (closest.as_df()
                   .sort_values(['query_idx', 'Distance'])
                   .drop_duplicates('query_idx')
                   .set_index('query_idx')
                   .reindex(np.arange(len(regions))))
        closest.index = regions.index
        return closest[columns].rename(columns={'gene_name': 'closest_gene', 'Distance': 'distance'})
