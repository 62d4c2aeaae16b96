import pytest
from pyVMRseq.priors import *
from pyVMRseq.cutoff import *
from pyVMRseq.errors import DataInsufficient
from pyVMRseq.sim import sim_sites
import numpy as np

np.random.seed(30)

@pytest.fixture
def sites():
    return sim_sites(500, n_cells=30, meth_frac=0.4, dropout=0.1, seed=30)

@pytest.fixture
def pars(sites):
    return get_prior_params(sites['total'].to_numpy())

def test_prior_class(pars):
    assert isinstance(pars, PriorParams)

def test_prior_values():
    pars = get_prior_params(np.repeat(20, 50))
    assert pars.pars_u == (1.0, 21.0)
    assert pars.pars_m == (21.0, 1.0)

def test_prior_means_mirror(pars):
    mean_u = pars.pars_u[0] / sum(pars.pars_u)
    mean_m = pars.pars_m[0] / sum(pars.pars_m)
    assert mean_u < 0.1
    assert mean_m == pytest.approx(1 - mean_u)

def test_prior_ignores_uncovered():
    total = np.r_[np.repeat(0, 100), np.repeat(10, 20)]
    assert get_prior_params(total).pars_u == (1.0, 11.0)

def test_prior_all_zero():
    with pytest.raises(DataInsufficient):
        get_prior_params(np.zeros(100, dtype=int))

def test_prior_single_cell():
    with pytest.raises(DataInsufficient):
        get_prior_params(np.ones(100, dtype=int))

def test_prior_too_few_sites():
    with pytest.raises(DataInsufficient):
        get_prior_params(np.repeat(30, 5))

def test_level_variance():
    levels = np.array([[0.0, 1.0, 0.0, 1.0], [0.2, 0.2, 0.2, 0.2], [0.0, 1.0, 0.5, 0.5]])
    covered = np.array([[True, True, True, True], [True, True, False, False], [True, True, False, False]])
    assert np.allclose(level_variance(levels), [0.25, 0, 0.125])
    assert np.allclose(level_variance(levels, covered), [0.25, 0, 0.25])
    assert np.allclose(level_variance(levels, np.zeros(levels.shape, dtype=bool)), 0)

def test_zero_prob():
    assert zero_prob((1, 31)) == pytest.approx(31 / 32)

def test_draw_cell_levels():
    rng = np.random.default_rng(1)
    levels = draw_cell_levels(rng, np.array([False] * 500 + [True] * 500), 20, (1, 31), (31, 1))
    assert levels.shape == (1000, 20)
    assert np.all((levels >= 0) & (levels <= 1))
    assert np.mean(levels[:500] == 0) == pytest.approx(31 / 32, abs=0.02)
    assert np.all(levels[500:] > 0)
    assert levels[500:].mean() == pytest.approx(31 / 32, abs=0.01)

def test_cutoff_continuous_statistic(sites, pars):
    cutoff = compute_var_cutoff(0.05, sites['meth'], sites['total'], pars.pars_u, pars.pars_m)
    assert cutoff < 0.01

def test_cutoff_range(sites, pars):
    cutoff = compute_var_cutoff(0.05, sites['meth'], sites['total'], pars.pars_u, pars.pars_m)
    assert 0 < cutoff < 0.25

def test_cutoff_reproducible(sites, pars):
    c1 = compute_var_cutoff(0.05, sites['meth'], sites['total'], pars.pars_u, pars.pars_m, n_sim=MIN_NUM_SIM, seed=1)
    c2 = compute_var_cutoff(0.05, sites['meth'], sites['total'], pars.pars_u, pars.pars_m, n_sim=MIN_NUM_SIM, seed=1)
    assert c1 == c2

def test_cutoff_monotone_in_alpha(sites, pars):
    cutoffs = [compute_var_cutoff(alpha, sites['meth'], sites['total'], pars.pars_u, pars.pars_m, seed=7)
               for alpha in [0.01, 0.05, 0.1, 0.2, 0.5]]
    assert all(np.diff(cutoffs) <= 0)

def test_cutoff_below_variable_sites(pars):
    sites = sim_sites(200, n_cells=30, vmr_blocks=[(50, 69, 0.5)], seed=3)
    cutoff = compute_var_cutoff(0.05, sites['meth'], sites['total'], pars.pars_u, pars.pars_m)
    assert all(sites['var'].iloc[50:70] > cutoff)

def test_cutoff_min_sim(sites, pars):
    with pytest.raises(ValueError):
        compute_var_cutoff(0.05, sites['meth'], sites['total'], pars.pars_u, pars.pars_m, n_sim=MIN_NUM_SIM - 1)

def test_cutoff_no_coverage(pars):
    with pytest.raises(DataInsufficient):
        compute_var_cutoff(0.05, np.zeros(10), np.zeros(10), pars.pars_u, pars.pars_m)

def test_cutoff_single_cell_sites(pars):
    with pytest.raises(DataInsufficient):
        compute_var_cutoff(0.05, np.zeros(20), np.ones(20), pars.pars_u, pars.pars_m)

def test_cutoff_saturated(sites, pars, monkeypatch):
    monkeypatch.setattr("pyVMRseq.cutoff.level_variance", lambda levels, cells: np.full(levels.shape[0], MAX_VARIANCE))
    with pytest.raises(DataInsufficient):
        compute_var_cutoff(0.05, sites['meth'], sites['total'], pars.pars_u, pars.pars_m, n_sim=MIN_NUM_SIM)

def test_cutoff_low_coverage():
    # About 4 of 8 cells cover each site
    sites = sim_sites(300, n_cells=8, vmr_blocks=[(100, 129, 0.5)], dropout=0.5, seed=4)
    pars = get_prior_params(sites['total'].to_numpy())
    cutoff = compute_var_cutoff(0.05, sites['meth'], sites['total'], pars.pars_u, pars.pars_m)
    assert cutoff < MAX_VARIANCE
    block = np.zeros(300, dtype=bool)
    block[100:130] = True
    assert np.mean(sites['var'][block] > cutoff) > 0.5
    assert np.mean(sites['var'][~block] > cutoff) < 0.1
