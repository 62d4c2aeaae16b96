import numpy as np
import pandas as pd
from pyVMRseq.priors import draw_cell_levels,level_variance

def sim_sites(n_sites: int,n_cells: int=30,spacing: int=50,chr: str="chr1",start_pos: int=1000,meth_frac: float=0.0,
              vmr_blocks=(),conc=None,dropout: float=0.0,seed=None) -> pd.DataFrame:
    """
    Simulate a site table of single-cell methylation data, with optional variably methylated blocks.

    At every site a methylation level is drawn for each of the two populations, p_u ~ Beta(1, conc) for unmethylated cells
    and p_m ~ Beta(conc, 1) for methylated cells, and each cell is called methylated with the level of its population.
    The smoothed level of each cell, from which var is computed, is drawn separately with draw_cell_levels().

    Parameters:
        n_sites (integer): Number of sites.
        n_cells (integer, default: 30): Number of cells.
        spacing (integer, default: 50): Distance in base pairs between neighbouring sites.
        chr (string, default: "chr1"): Chromosome name of all sites.
        start_pos (integer, default: 1000): Position of the first site.
        meth_frac (float, default: 0.0): Fraction of background sites that are methylated in all cells (the rest are unmethylated in all cells).
        vmr_blocks (list of tuples, default: ()): (start, end, pi) for each variably methylated block of sites start..end (inclusive).
            At each of its sites every cell is in the methylated grouping with probability pi.
        conc (optional: float): Concentration of the beta distributions of methylation levels. Defaults to n_cells + 1, the
            value get_prior_params() estimates from complete coverage.
        dropout (float, default: 0.0): Probability a cell has no call at a site. Varies coverage between sites.
        seed (optional: integer): Seed of the random generator.

    Returns:
        pandas dataframe: Columns chr, pos, meth, total and var (variance across covered cells of smoothed levels, see level_variance).
    """
    assert isinstance(n_sites,int) and n_sites>0, "n_sites must be positive integer"
    assert isinstance(n_cells,int) and n_cells>0, "n_cells must be positive integer"
    assert 0 <= meth_frac <= 1, "meth_frac must be between 0 and 1"
    assert 0 <= dropout < 1, "dropout must be between 0 and 1"
    if conc is None:
        conc = n_cells + 1
    assert conc>0, "conc must be positive"

    rng = np.random.default_rng(seed)
    pos = start_pos + spacing * np.arange(n_sites)

    state = np.repeat((rng.random(n_sites) < meth_frac)[:, np.newaxis], n_cells, axis=1)
    for start, end, pi in vmr_blocks:
        if start < 0 or end >= n_sites or end < start:
            raise ValueError(f"Block ({start}, {end}) is outside the {n_sites} simulated sites.")
        state[start:end+1] = rng.random((end - start + 1, n_cells)) < pi

    level_u = rng.beta(1, conc, size=n_sites)[:, np.newaxis]
    level_m = rng.beta(conc, 1, size=n_sites)[:, np.newaxis]
    calls = rng.random((n_sites, n_cells)) < np.where(state, level_m, level_u)
    covered = rng.random((n_sites, n_cells)) >= dropout
    meth = (calls & covered).sum(axis=1)
    total = covered.sum(axis=1)
    cell_levels = draw_cell_levels(rng, state, n_cells, (1, conc), (conc, 1))

    return pd.DataFrame({
        'chr': chr,
        'pos': pos,
        'meth': meth,
        'total': total,
        'var': level_variance(cell_levels, covered)
    })
