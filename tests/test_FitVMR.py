import pytest
from pyVMRseq.FitVMR import *
from pyVMRseq.priors import get_prior_params
from pyVMRseq.sim import sim_sites
import numpy as np

np.random.seed(30)

@pytest.fixture
def bb_params():
    return get_prior_params(np.repeat(30, 100))

@pytest.fixture
def flat():
    return sim_sites(40, n_cells=30, seed=11)

@pytest.fixture
def split():
    # Sites 20..39 are variably methylated, 0..19 unmethylated in all cells
    return sim_sites(40, n_cells=30, vmr_blocks=[(20, 39, 0.5)], seed=12)

def make_model(sites, bb_params, control=None):
    return FitVMR(sites['meth'], sites['total'], sites['pos'], bb_params, control=control)

def test_optim_control_defaults():
    control = optim_control()
    assert control.inits == (0.2, 0.5, 0.8)
    assert control.max_iter == 50

def test_optim_control_invalid():
    with pytest.raises(AssertionError):
        optim_control(inits=(1.5,))
    with pytest.raises(AssertionError):
        optim_control(max_iter=0)

def test_invalid_counts(bb_params):
    with pytest.raises(ValueError):
        FitVMR([5, 1], [3, 4], [100, 150], bb_params)

def test_emissions_are_distributions(bb_params):
    n = 12
    meth = np.arange(n + 1)
    model = FitVMR(meth, np.repeat(n, n + 1), np.arange(n + 1) * 50, bb_params)
    for pi in [0.1, 0.5, 0.9]:
        emis = np.exp(model.log_emissions(pi))
        assert np.allclose(emis.sum(axis=0), 1)

def test_uncovered_site(bb_params):
    model = FitVMR([0, 3], [0, 10], [100, 150], bb_params)
    assert np.allclose(model.log_emissions(0.4)[0], 0)

def test_gradient_matches_finite_difference(split, bb_params):
    model = make_model(split, bb_params)
    h = 1e-5
    for pi in [0.2, 0.45, 0.7]:
        _, grad, _ = model.gradient(pi)
        numeric = (model.loglik(pi + h) - model.loglik(pi - h)) / (2 * h)
        assert grad == pytest.approx(numeric, rel=1e-3, abs=1e-3)

def test_loglik_matches_gradient_output(split, bb_params):
    model = make_model(split, bb_params)
    ll, _, _ = model.gradient(0.3)
    assert ll == pytest.approx(model.loglik(0.3))

def test_recovers_boundary(split, bb_params):
    model = make_model(split, bb_params)
    model.fit()
    candidates = model.vmr_candidates(min_num_vmr=5)
    assert len(candidates) == 1
    start, end = candidates[0]
    assert abs(start - 20) <= 1
    assert end == 39

def test_recovers_prevalence(split, bb_params):
    model = make_model(split, bb_params)
    fit = model.fit()
    assert fit['converged']
    assert abs(fit['pi'] - 0.5) < 0.1

@pytest.mark.parametrize("pi", [0.3, 0.7])
def test_recovers_prevalence_block(bb_params, pi):
    sites = sim_sites(30, n_cells=30, vmr_blocks=[(0, 29, pi)], seed=21)
    fit = make_model(sites, bb_params).fit()
    assert abs(fit['pi'] - pi) < 0.1

def test_loglik_diff_split(split, bb_params):
    model = make_model(split, bb_params)
    model.fit()
    sub = model.subset(20, 39)
    assert sub.loglik_diff(model.pi) > 20

def test_flat_region(flat, bb_params):
    model = make_model(flat, bb_params)
    model.fit()
    assert model.vmr_candidates(min_num_vmr=5) == []
    assert model.loglik_diff(model.pi) < 3

def test_flat_methylated_region(bb_params):
    sites = sim_sites(40, n_cells=30, meth_frac=1.0, seed=13)
    model = make_model(sites, bb_params)
    model.fit()
    assert model.vmr_candidates(min_num_vmr=5) == []
    assert np.mean(model.path == M) > 0.9

def test_no_gradient_pins_pi(split, bb_params):
    model = make_model(split, bb_params, control=optim_control(inits=(0.35, 0.8)))
    fit = model.fit(gradient=False)
    assert fit['pi'] == 0.35
    assert fit['n_iter'] == 0

def test_non_convergence_is_reported(split, bb_params):
    model = make_model(split, bb_params, control=optim_control(inits=(0.05,), max_iter=1, epsilon=1e-12))
    fit = model.fit()
    assert not fit['converged']
    assert fit['n_iter'] == 1
    assert model.path is not None

def test_ascent_never_decreases(split, bb_params):
    model = make_model(split, bb_params)
    start = model.loglik(0.2)
    assert model.ascend(0.2)['loglik'] >= start

def test_subset_matches_new_model(split, bb_params):
    model = make_model(split, bb_params)
    sub = model.subset(10, 29)
    fresh = make_model(split.iloc[10:30], bb_params)
    assert sub.loglik(0.4) == pytest.approx(fresh.loglik(0.4))
    assert sub.loglik_one() == pytest.approx(fresh.loglik_one())

def test_vmr_candidates_before_fit(split, bb_params):
    with pytest.raises(AssertionError):
        make_model(split, bb_params).vmr_candidates()

def test_viterbi_simple():
    log_init = np.log(np.array([0.5, 0.5]))
    log_trans = np.log(np.tile(np.array([[0.9, 0.1], [0.1, 0.9]]), (5, 1, 1)))
    log_emis = np.log(np.array([[0.9, 0.1], [0.9, 0.1], [0.2, 0.8], [0.1, 0.9], [0.1, 0.9], [0.95, 0.05]]))
    assert list(viterbi(log_init, log_trans, log_emis)) == [0, 0, 1, 1, 1, 0]

def test_forward_single_site():
    log_alpha = forward(np.log([0.5, 0.5]), np.zeros((0, 2, 2)), np.log(np.array([[0.2, 0.4]])))
    assert np.allclose(np.exp(log_alpha), [[0.1, 0.2]])

def test_mixed_prevalence_region(bb_params):
    # Two adjacent variable blocks share one pi, which settles on the majority-like block at 0.9
    sites = sim_sites(40, n_cells=30, vmr_blocks=[(0, 19, 0.1), (20, 39, 0.9)], seed=1)
    model = make_model(sites, bb_params)
    fit = model.fit()
    candidates = model.vmr_candidates(min_num_vmr=5)
    assert len(candidates) >= 1
    start, end = candidates[-1]
    assert abs(start - 20) <= 2
    assert end == 39
    assert abs(fit['pi'] - 0.9) < 0.1
    # The pi = 0.1 block is found when fitted on its own
    alone = make_model(sites.iloc[:20], bb_params)
    alone.fit()
    assert len(alone.vmr_candidates(min_num_vmr=5)) >= 1
