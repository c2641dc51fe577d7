import numpy as np
import pandas as pd

from scatac_data_processing.io.fragments import count_insertions, read_fragments
from scatac_data_processing.io.tenx import make_peaks_object
from scatac_data_processing.merge import combine_peaks, merge_samples

from conftest import write_fragments


def two_samples(fragments_1=None, fragments_2=None):
    s1 = make_peaks_object(np.array([[1, 2], [0, 3]]), ["AAAC-1", "AAAG-1"], ["chr1:100-200", "chr1:500-700"],
                           sample="s1", fragments=fragments_1)
    # AAAC-1 is also a barcode of the second sample
    s2 = make_peaks_object(np.array([[4, 0], [1, 1], [0, 2]]), ["AAAC-1", "TTTG-1", "TTTC-1"],
                           ["chr1:150-300", "chr2:100-400"], sample="s2", fragments=fragments_2)
    return {"s1": s1, "s2": s2}


def test_combine_peaks():
    samples = two_samples()
    peaks = combine_peaks(list(samples.values()))
    assert peaks.index.tolist() == ["chr1-100-300", "chr1-500-700", "chr2-100-400"]
    assert peaks.Start.tolist() == [100, 500, 100]
    wide = combine_peaks(list(samples.values()), min_width=250)
    assert wide.index.tolist() == ["chr2-100-400"]


def test_merge_keeps_every_cell_once():
    samples = two_samples()
    merged = merge_samples(samples, requantify_peaks=False)
    assert merged.n_obs == 5
    assert merged.obs_names.is_unique
    assert merged.obs.dataset.value_counts().to_dict() == {"s1": 2, "s2": 3}
    pairs = list(zip(merged.obs.dataset.astype(str), merged.obs.barcode))
    assert sorted(pairs) == sorted([("s1", "AAAC-1"), ("s1", "AAAG-1"),
                                    ("s2", "AAAC-1"), ("s2", "TTTG-1"), ("s2", "TTTC-1")])
    # outer join over the features, zero where a sample lacks a peak
    assert set(merged.var_names) == {"chr1-100-200", "chr1-500-700", "chr1-150-300", "chr2-100-400"}
    totals = pd.Series(np.asarray(merged.X.sum(axis=1)).ravel(), index=merged.obs_names)
    assert totals["AAAC-1_s1"] == 3
    assert totals["AAAC-1_s2"] == 4
    assert merged.var.loc["chr2-100-400", "Chromosome"] == "chr2"


def test_merge_requantifies_from_fragments(tmp_path):
    fragments_1 = write_fragments(tmp_path / "s1.tsv.gz", [
        ("chr1", 120, 180, "AAAC-1", 1),
        ("chr1", 550, 650, "AAAG-1", 1),
    ])
    fragments_2 = write_fragments(tmp_path / "s2.tsv.gz", [
        ("chr1", 250, 600, "AAAC-1", 1),
        ("chr2", 150, 350, "TTTG-1", 1),
    ])
    merged = merge_samples(two_samples(fragments_1, fragments_2), requantify_peaks=True)
    assert merged.var_names.tolist() == ["chr1-100-300", "chr1-500-700", "chr2-100-400"]
    assert merged.uns["fragments"] == {"s1": fragments_1, "s2": fragments_2}
    counts = pd.DataFrame(merged.X.toarray(), index=merged.obs_names, columns=merged.var_names)
    assert counts.loc["AAAC-1_s1"].tolist() == [2, 0, 0]
    assert counts.loc["AAAG-1_s1"].tolist() == [0, 2, 0]
    assert counts.loc["AAAC-1_s2"].tolist() == [1, 1, 0]
    assert counts.loc["TTTG-1_s2"].tolist() == [0, 0, 2]
    assert counts.loc["TTTC-1_s2"].tolist() == [0, 0, 0]

    fragments = read_fragments(fragments_2, ["AAAC-1"])
    direct = count_insertions(fragments, merged.var, ["AAAC-1"]).toarray()
    assert direct.tolist() == [[1, 1, 0]]
