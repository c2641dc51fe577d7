import numpy as np
import pandas as pd
from Bio.Seq import Seq
from Bio.SeqUtils import gc_fraction
from scipy.sparse import csr_matrix

from scatac_data_processing.io.motif import collect_hits

# spacer put between sequences before scanning them as one string
SPACER = 100


# class for sequence manipulation
class DNASequence(Seq):
    def __init__(self, seq, header=''):
        if isinstance(seq, (bytes, bytearray)):
            seq = seq.decode()
        super().__init__(str(seq).upper())
        self.header = header

    @property
    def gc_content(self):
        """
        GC fraction over the full length, ambiguous bases count in the denominator
        """
        if len(self) == 0:
            return 0.0
        return gc_fraction(str(self), ambiguous='ignore')


class DNASequenceCollection():
    """A collection of DNA sequences objects"""
    def __init__(self, sequences):
        self.sequences = sequences

    def __iter__(self):
        for seq in self.sequences:
            yield seq

    def __len__(self):
        return len(self.sequences)

    def __repr__(self) -> str:
        return f"DNASequenceCollection with {len(self.sequences)} sequences"

    @property
    def gc_content(self):
        return np.array([seq.gc_content for seq in self.sequences])

    @property
    def lengths(self):
        return np.array([len(seq) for seq in self.sequences])

    def to_list(self):
        return [str(seq) for seq in self.sequences]

    def scan_motif(self, motifs):
        """
        Scan motifs in all sequences at once using MOODS.

        Parameters
        ----------
        motifs: MotifSet
            Motifs with a prepared MOODS scanner.

        Returns
        -------
        scipy.sparse.csr_matrix
            Binary sequence-by-motif matrix, 1 where the motif has at least one
            hit on either strand.
        """
        lengths = self.lengths
        if len(lengths) == 0:
            return csr_matrix((0, len(motifs.matrix_names)), dtype=np.int8)
        # concatenate the sequences with Ns between each sequence
        seq_cat = ("N" * SPACER).join(self.to_list())
        starts = np.cumsum(np.concatenate([[0], lengths[:-1]])) + SPACER * np.arange(len(lengths))
        ends = starts + lengths
        results = motifs.scanner.scan(seq_cat)
        output = pd.DataFrame(
            collect_hits(results, motifs.matrix_names, motifs.motif_lengths),
            columns=["motif", "pos", "strand", "score", "length"],
        )
        # assign each hit to the sequence it starts in and drop hits running into the spacer
        seq_idx = np.searchsorted(starts, output.pos.values, side="right") - 1
        keep = (seq_idx >= 0) & (output.pos.values + output.length.values <= ends[np.clip(seq_idx, 0, None)])
        output = output[keep].assign(seq_idx=seq_idx[keep])
        motif_c = pd.CategoricalDtype(categories=motifs.matrix_names, ordered=True)
        hits = output[["seq_idx", "motif"]].drop_duplicates()
        row = hits.seq_idx.values
        col = hits.motif.astype(motif_c).cat.codes.values
        return csr_matrix(
            (np.ones(len(hits), dtype=np.int8), (row, col)),
            shape=(len(lengths), len(motifs.matrix_names)),
        )
