import numpy as np
from pyVMRseq.errors import DataInsufficient
from pyVMRseq.type_annotations import PriorParams

# Largest variance of values in [0, 1]
MAX_VARIANCE = 0.25

def get_prior_params(total, min_sites: int=10) -> PriorParams:
    """
    Get beta prior parameters of the homogeneously unmethylated and homogeneously methylated site populations,
    from the coverage (number of cells) observed across all sites.

    Parameters:
        total (1D numpy array): Number of cells covering each site.
        min_sites (integer, default: 10): Minimum number of covered sites (total > 0) needed to estimate priors.

    Returns:
        PriorParams: Named tuple of (alpha, beta) pairs, pars_u for the unmethylated population and pars_m for the
        methylated population.

    Raises:
        DataInsufficient: If fewer than min_sites sites are covered, or the median coverage is below 2 cells.

    Notes:
        With N the median coverage of covered sites, the methylation level of an unmethylated site is modelled
        as Beta(1, N + 1), whose mean 1 / (N + 2) is the add-one estimate of the level at a site where none of
        N cells are methylated. The methylated population mirrors this, Beta(N + 1, 1). Deeper coverage therefore
        gives tighter priors around 0 and 1.
    """
    assert isinstance(min_sites,int), "min_sites must be positive integer"
    assert min_sites>0, "min_sites must be positive integer"

    total = np.asarray(total)
    if np.any(total < 0):
        raise ValueError("Coverage (total) must be non-negative.")
    covered = total[total > 0]
    if covered.size < min_sites:
        raise DataInsufficient(f"Only {covered.size} sites have non-zero coverage, at least {min_sites} are needed to estimate beta priors.")

    med_total = float(np.median(covered))
    if med_total < 2:
        raise DataInsufficient(f"Median coverage is {med_total}, at least 2 cells per site are needed to estimate beta priors.")

    pars_u = (1.0, med_total + 1)
    pars_m = (med_total + 1, 1.0)
    return PriorParams(pars_u=pars_u, pars_m=pars_m)

def zero_prob(pars_u) -> float:
    """
    Probability that an unmethylated cell has a smoothed methylation level of exactly 0, i.e. that a single call drawn
    with level p ~ Beta(pars_u) is unmethylated.
    """
    return pars_u[1] / (pars_u[0] + pars_u[1])

def draw_cell_levels(rng,is_meth,n_cells: int,pars_u,pars_m) -> np.ndarray:
    """
    Draw smoothed methylation levels of cells at sites where all cells share one methylation state.

    Parameters:
        rng (numpy Generator): Random generator.
        is_meth (1D or 2D boolean numpy array): Whether each site (1D) or each cell at each site (2D) is methylated.
        n_cells (integer): Number of cells drawn per site.
        pars_u (tuple): (alpha, beta) of the beta prior of unmethylated sites.
        pars_m (tuple): (alpha, beta) of the beta prior of methylated sites.

    Returns:
        2D numpy array: Shape (n_sites, n_cells). Methylated cells follow Beta(pars_m); unmethylated cells follow a
        zero-inflated beta, 0 with probability zero_prob(pars_u) and Beta(pars_u) otherwise.
    """
    is_meth = np.asarray(is_meth, dtype=bool)
    if is_meth.ndim == 1:
        is_meth = np.repeat(is_meth[:, np.newaxis], n_cells, axis=1)
    a = np.where(is_meth, pars_m[0], pars_u[0])
    b = np.where(is_meth, pars_m[1], pars_u[1])
    levels = rng.beta(a, b)
    zero = ~is_meth & (rng.random(is_meth.shape) < zero_prob(pars_u))
    levels[zero] = 0.0
    return levels

def level_variance(levels,covered=None) -> np.ndarray:
    """
    Variance across covered cells of smoothed methylation levels at each site (population variance, 0 for sites with no
    covered cell). This is the statistic compared against the variance cutoff.

    Parameters:
        levels (2D numpy array): Shape (n_sites, n_cells), methylation level of each cell in [0, 1].
        covered (optional: 2D boolean numpy array): Which cells cover each site. All cells if not given.

    Returns:
        1D numpy array: Variance at each site, between 0 and MAX_VARIANCE.
    """
    levels = np.asarray(levels, dtype='float64')
    if covered is None:
        covered = np.ones(levels.shape, dtype=bool)
    n = covered.sum(axis=1)
    s1 = np.where(covered, levels, 0.0).sum(axis=1)
    s2 = np.where(covered, levels**2, 0.0).sum(axis=1)
    mean = np.divide(s1, n, out=np.zeros(n.shape), where=n > 0)
    var = np.divide(s2, n, out=np.zeros(n.shape), where=n > 0) - mean**2
    return np.clip(var, 0, MAX_VARIANCE)
