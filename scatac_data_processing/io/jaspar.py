import logging
import pickle

import numpy as np
from pyjaspar import jaspardb

from .motif import MotifSet

logger = logging.getLogger(__name__)


def motif_to_pfm(motif):
    """Rows A, C, G, T of a Bio.motifs motif as a 4 x L array."""
    return np.array([motif.counts[base] for base in "ACGT"], dtype=float)


class JasparMotifs(MotifSet):
    """TFBS motifs from a JASPAR release, fetched with pyjaspar."""

    def __init__(self, release="JASPAR2020", collection="CORE", tax_group=None, species=None,
                 all_versions=False, pseudocount=0.8, motifs=None):
        self.release = release
        if motifs is None:
            motifs = self.fetch(release, collection, tax_group, species, all_versions)
        if len(motifs) == 0:
            raise ValueError(f"No motifs in {release} for collection={collection}, tax_group={tax_group}, species={species}")
        super().__init__(
            [m.matrix_id for m in motifs],
            [m.name for m in motifs],
            [motif_to_pfm(m) for m in motifs],
            database=release,
            pseudocount=pseudocount,
        )

    @staticmethod
    def fetch(release, collection="CORE", tax_group=None, species=None, all_versions=False):
        logger.info("Fetching %s %s motifs", release, collection)
        jdb = jaspardb(release=release)
        kwargs = dict(collection=collection, all_versions=all_versions)
        if tax_group:
            kwargs['tax_group'] = list(tax_group)
        if species:
            kwargs['species'] = species
        motifs = jdb.fetch_motifs(**kwargs)
        logger.info("Fetched %d motifs", len(motifs))
        return motifs

    # facility to export the instance as a pickle and load it back
    def __getstate__(self):
        state = self.__dict__.copy()
        # the MOODS scanner is not picklable, it is rebuilt on demand
        state['_scanner'] = None
        return state

    def __setstate__(self, state):
        self.__dict__.update(state)

    def save_to_pickle(self, file_path):
        """Save the motif set to a pickle file."""
        with open(file_path, 'wb') as f:
            pickle.dump(self.__getstate__(), f)

    @classmethod
    def load_from_pickle(cls, file_path):
        """Load the motif set from a pickle file."""
        with open(file_path, 'rb') as f:
            state = pickle.load(f)
        instance = cls.__new__(cls)
        instance.__setstate__(state)
        return instance
