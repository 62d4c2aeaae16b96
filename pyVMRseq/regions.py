from dataclasses import dataclass
import numpy as np
import pandas as pd
from pyVMRseq.parallel import parallel_map

@dataclass(frozen=True)
class IndexRange:
    """
    Closed interval [start_ind, end_ind] of 0-based row indices into a site table.
    """
    start_ind: int
    end_ind: int

    def __post_init__(self):
        if self.start_ind < 0 or self.end_ind < self.start_ind:
            raise ValueError(f"Invalid index range [{self.start_ind}, {self.end_ind}].")

    @property
    def num_cpg(self) -> int:
        return self.end_ind - self.start_ind + 1

    def indices(self) -> np.ndarray:
        return np.arange(self.start_ind, self.end_ind + 1)

    def contains(self, other) -> bool:
        return self.start_ind <= other.start_ind and other.end_ind <= self.end_ind

    def overlaps(self, other) -> bool:
        return self.start_ind <= other.end_ind and other.start_ind <= self.end_ind

def check_disjoint(ranges):
    """
    Check that index ranges are sorted by position and pairwise disjoint.

    Raises:
        ValueError: If two ranges overlap or are out of order.
    """
    for prev, cur in zip(ranges[:-1], ranges[1:]):
        if cur.start_ind <= prev.end_ind:
            raise ValueError(f"Index ranges [{prev.start_ind}, {prev.end_ind}] and [{cur.start_ind}, {cur.end_ind}] overlap or are not sorted.")

def check_nested(inner, outer):
    """
    Check that every range in inner lies within exactly one range of outer.

    Raises:
        ValueError: If a range of inner is not contained in exactly one range of outer.
    """
    for region in inner:
        n_parents = sum(parent.contains(region) for parent in outer)
        if n_parents != 1:
            raise ValueError(f"Index range [{region.start_ind}, {region.end_ind}] is contained in {n_parents} enclosing ranges, expected 1.")

def label_runs(labels):
    """
    Find maximal runs of equal, non-negative labels.

    Parameters:
        labels (1D numpy array): Integer label of each site, -1 for sites excluded from any run.

    Returns:
        list: (start, end) tuple of inclusive indices for each run, in order.
    """
    labels = np.asarray(labels)
    if labels.size == 0:
        return []
    change = np.flatnonzero(np.diff(labels)) + 1
    starts = np.r_[0, change]
    ends = np.r_[change - 1, labels.size - 1]
    keep = labels[starts] >= 0
    return [(int(s), int(e)) for s, e in zip(starts[keep], ends[keep])]

def cluster_maker(chr,pos,max_gap: int=2000) -> np.ndarray:
    """
    Group consecutive sites into proximity clusters. A new cluster starts at each change of chromosome, or where
    consecutive positions are more than max_gap base pairs apart.

    Parameters:
        chr (1D numpy array): Chromosome of each site.
        pos (1D numpy array): Genomic position of each site.
        max_gap (integer, default: 2000): Maximum gap in base pairs between neighbouring sites of one cluster.

    Returns:
        1D numpy array: Cluster id of each site, increasing from 0.
    """
    chr = np.asarray(chr)
    pos = np.asarray(pos)
    if pos.size == 0:
        return np.zeros(0, dtype=np.int64)
    new_cluster = (chr[1:] != chr[:-1]) | (np.diff(pos) > max_gap)
    return np.r_[0, np.cumsum(new_cluster)].astype(np.int64)

def get_segments(x,cutoff: float,clusters) -> list:
    """
    Find maximal runs of sites with values strictly above cutoff, never crossing a cluster boundary.
    A single site at or below the cutoff (or NaN) breaks a run.

    Returns:
        list: (start, end) tuple of inclusive indices for each run.
    """
    x = np.asarray(x, dtype='float64')
    with np.errstate(invalid='ignore'):
        up = x > cutoff
    labels = np.where(up, np.asarray(clusters), -1)
    return label_runs(labels)

def call_candidate_regions(sites: pd.DataFrame,cutoff: float,max_gap: int=2000,min_num_cr: int=5,ncpu: int=1,executor=None) -> list:
    """
    Detect candidate regions: runs of at least min_num_cr neighbouring sites whose variance exceeds cutoff.

    Parameters:
        sites (pandas dataframe): Site table with columns 'chr', 'pos' and 'var', ordered by position within each chromosome.
        cutoff (float): Variance threshold (see compute_var_cutoff).
        max_gap (integer, default: 2000): Maximum gap in base pairs between neighbouring sites of one region.
        min_num_cr (integer, default: 5): Minimum number of sites in a candidate region.
        ncpu (integer, default: 1): Number of cpus to use. If > 1 chromosomes are processed in parallel with Ray.
        executor (optional): Executor with an order preserving map() method, used instead of Ray if given.

    Returns:
        list: Sorted, disjoint IndexRange objects, one per candidate region. Empty if no region passes.
    """
    assert isinstance(max_gap,(int,np.integer)), "max_gap must be positive integer"
    assert max_gap>0, "max_gap must be positive integer"
    assert isinstance(min_num_cr,(int,np.integer)), "min_num_cr must be positive integer"
    assert min_num_cr>0, "min_num_cr must be positive integer"

    blocks = chromosome_blocks(sites)
    pos = sites['pos'].to_numpy()
    var = sites['var'].to_numpy(dtype='float64')
    units = [(start, pos[start:end+1], var[start:end+1]) for start, end in blocks]

    chrom_crs = parallel_map(_call_chromosome, units, ncpu=ncpu, executor=executor, shared=(cutoff, max_gap, min_num_cr))
    crs = [IndexRange(start, end) for chrom in chrom_crs for start, end in chrom]
    check_disjoint(crs)
    return crs

def _call_chromosome(unit,cutoff,max_gap,min_num_cr):
    """Candidate regions of one chromosome, as (start, end) indices into the full site table."""
    offset, pos, var = unit
    clusters = cluster_maker(np.zeros(pos.size, dtype=np.int8), pos, max_gap)
    segments = get_segments(var, cutoff, clusters)
    return [(offset + start, offset + end) for start, end in segments if end - start + 1 >= min_num_cr]

def chromosome_blocks(sites: pd.DataFrame) -> list:
    """
    Split the site table into one block of rows per chromosome.

    Returns:
        list: (start, end) tuple of inclusive row indices for each chromosome, in table order.

    Raises:
        ValueError: If a chromosome is split over several blocks, or positions decrease within a chromosome.
    """
    codes, uniques = pd.factorize(sites['chr'])
    blocks = label_runs(codes)
    if len(blocks) != len(uniques):
        raise ValueError("Sites of each chromosome must be contiguous in the site table.")
    pos = sites['pos'].to_numpy()
    for start, end in blocks:
        if np.any(np.diff(pos[start:end+1]) < 0):
            raise ValueError(f"Sites on chromosome {sites['chr'].iloc[start]} are not ordered by position.")
    return blocks

def index_to_ranges(sites: pd.DataFrame,ranges) -> pd.DataFrame:
    """
    Map index ranges to genomic coordinates.

    Parameters:
        sites (pandas dataframe): Site table with columns 'chr' and 'pos'.
        ranges (list): IndexRange objects.

    Returns:
        pandas dataframe: One row per range with columns chr, start (position of first site), end (position of last site),
        num_cpg, start_ind and end_ind.
    """
    start_ind = np.array([r.start_ind for r in ranges], dtype=np.int64)
    end_ind = np.array([r.end_ind for r in ranges], dtype=np.int64)
    return pd.DataFrame({
        'chr': sites['chr'].to_numpy()[start_ind],
        'start': sites['pos'].to_numpy()[start_ind],
        'end': sites['pos'].to_numpy()[end_ind],
        'num_cpg': end_ind - start_ind + 1,
        'start_ind': start_ind,
        'end_ind': end_ind
    })

def membership_index(n_sites: int,ranges) -> pd.Series:
    """
    Row of the range each site belongs to (0-based, in the order of ranges), missing for sites outside all ranges.
    """
    index = pd.Series(pd.NA, index=range(n_sites), dtype='Int64')
    for row, region in enumerate(ranges):
        index.iloc[region.start_ind:region.end_ind+1] = row
    return index
