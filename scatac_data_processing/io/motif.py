import numpy as np
import pandas as pd
import seqlogo
from MOODS.scan import Scanner
from MOODS.tools import log_odds, threshold_from_p_with_precision

# A, C, G, T
UNIFORM_BG = [0.25, 0.25, 0.25, 0.25]


def pfm_to_log_odds(pfm, bg=UNIFORM_BG, ps=0.8):
    """Convert a 4 x L count matrix to a MOODS log-odds matrix."""
    mat = [list(map(float, row)) for row in np.asarray(pfm)]
    if len(mat) != 4:
        raise ValueError(f"Expected a 4-row position frequency matrix, got {len(mat)} rows")
    return log_odds(mat, bg, ps)


def reverse_complement(matrix):
    """Reverse complement of a 0-order matrix with rows A, C, G, T."""
    return [list(row[::-1]) for row in matrix[::-1]]


def collect_hits(results, matrix_names, motif_lengths):
    """
    Flatten MOODS results for forward and reverse matrices into one hit list.

    The scanner is set with the forward matrices followed by their reverse
    complements, so `results` holds 2 x len(matrix_names) lists.
    """
    # split results into forward and reverse strands
    fr = results[:len(matrix_names)]
    rr = results[len(matrix_names):]

    output = []
    for i, (matrix_name, length) in enumerate(zip(matrix_names, motif_lengths)):
        output += [(matrix_name, r.pos, '+', r.score, length) for r in fr[i]]
        output += [(matrix_name, r.pos, '-', r.score, length) for r in rr[i]]
    # sort by position so that hit tables do not depend on scanner internals
    return sorted(output, key=lambda r: (r[1], r[0], r[2]))


def prepare_scanner(matrices_all, bg=UNIFORM_BG, pvalue=5e-5):
    """
    Prepare scanner for scanning motif.
    """
    scanner = Scanner(7)
    scanner.set_motifs(matrices_all, bg, [threshold_from_p_with_precision(
        m, bg, pvalue, 200, 4) for m in matrices_all])
    return scanner


class Motif(object):
    """Base class for TFBS motifs."""

    def __init__(self, id, name, pfm, database=None):
        self.id = id
        self.name = name
        self.database = database
        self.pfm = pd.DataFrame(np.asarray(pfm, dtype=float).T, columns=['A', 'C', 'G', 'T'])

    def __repr__(self) -> str:
        return "Motif(id={}, name={}, database={}, length={})".format(self.id, self.name, self.database, len(self))

    def __len__(self):
        return self.pfm.shape[0]

    def plot_logo(self, filename=None, format='pdf'):
        """plot seqlogo of motif using pfm"""
        ppm = self.pfm.div(self.pfm.sum(axis=1), axis=0)
        pm = seqlogo.CompletePm(pfm=seqlogo.Pfm(ppm))
        return seqlogo.seqlogo(pm, filename=filename, format=format, size='medium', ic_scale=True,
                               logo_title=f"{self.name} ({self.id})", color_scheme='classic')


class MotifSet(object):
    """
    Ordered collection of motifs with their MOODS matrices.

    `pfms` are 4 x L count (or frequency) matrices with rows A, C, G, T.
    """

    def __init__(self, ids, names, pfms, database=None, pseudocount=0.8):
        if not (len(ids) == len(names) == len(pfms)):
            raise ValueError("ids, names and pfms must have the same length")
        if len(set(ids)) != len(ids):
            raise ValueError("Motif ids must be unique")
        self.database = database
        self.pseudocount = pseudocount
        self.motifs = {
            motif_id: Motif(motif_id, name, pfm, database) for motif_id, name, pfm in zip(ids, names, pfms)
        }
        self.matrix_names = list(ids)
        self.motif_to_name = dict(zip(ids, names))
        self.motif_lengths = [len(self.motifs[i]) for i in ids]
        self.bg = UNIFORM_BG
        self.pvalue = 5e-5
        self._set_matrices()

    def __repr__(self) -> str:
        return f"MotifSet({self.database}) with {len(self)} motifs"

    def __len__(self):
        return len(self.matrix_names)

    def __contains__(self, motif_id):
        return motif_id in self.motifs

    def _set_matrices(self):
        self.matrices = [
            pfm_to_log_odds(self.motifs[i].pfm.values.T, self.bg, self.pseudocount) for i in self.matrix_names
        ]
        self.matrices_all = self.matrices + [reverse_complement(m) for m in self.matrices]
        self._scanner = None

    def set_background(self, bg=None, pvalue=None):
        """Set base composition and p-value threshold used for scanning."""
        if bg is not None:
            if len(bg) != 4:
                raise ValueError("Background must give the frequency of A, C, G and T")
            self.bg = [float(b) for b in bg]
        if pvalue is not None:
            self.pvalue = pvalue
        self._set_matrices()
        return self

    @property
    def names(self):
        return [self.motif_to_name[i] for i in self.matrix_names]

    @property
    def scanner(self):
        """Get MOODS scanner."""
        if self._scanner is None:
            self._scanner = prepare_scanner(self.matrices_all, self.bg, self.pvalue)
        return self._scanner

    def get_motif(self, motif_id):
        """Get motif by ID."""
        return self.motifs[motif_id]

    def lookup(self, names=None, ids=None):
        """Convert between motif names and ids, the way Signac's ConvertMotifID does."""
        if (names is None) == (ids is None):
            raise ValueError("Give either names or ids")
        if ids is not None:
            return [self.motif_to_name[i] for i in ids]
        name_to_id = {}
        for motif_id, name in self.motif_to_name.items():
            name_to_id.setdefault(name, motif_id)
        missing = [n for n in names if n not in name_to_id]
        if missing:
            raise KeyError(f"Unknown motif names: {', '.join(missing)}")
        return [name_to_id[n] for n in names]
