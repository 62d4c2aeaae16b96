import time
import warnings
import numpy as np
import pandas as pd
from pyVMRseq.cutoff import compute_var_cutoff
from pyVMRseq.errors import OptimizerNonConvergence
from pyVMRseq.FitVMR import optim_control
from pyVMRseq.parallel import backend_name
from pyVMRseq.priors import get_prior_params
from pyVMRseq.regions import call_candidate_regions,index_to_ranges,membership_index
from pyVMRseq.search import search_vmr
from pyVMRseq.transition import TP0
from pyVMRseq.type_annotations import PriorParams,VMRseqResult

SITE_COLUMNS = ['chr','pos','meth','total','var']

def vmrseq_fit(sites: pd.DataFrame,alpha: float=0.05,max_gap: int=2000,stage1only: bool=False,min_num_cr: int=5,
               min_num_vmr: int=5,gradient: bool=True,tp=None,control=None,bb_params=None,n_sim: int=500000,
               seed: int=2023,verbose: bool=True,ncpu: int=1,executor=None) -> VMRseqResult:
    """
    Construct candidate regions from sites whose variance exceeds a threshold, then detect variably methylated regions (VMRs)
    within them by optimizing a hidden Markov model.

    Parameters:
        sites (pandas dataframe): One row per site, ordered by position within each chromosome, with columns 'chr', 'pos',
            'meth' (number of methylated cells), 'total' (number of covered cells) and 'var' (smoothed variance of methylation
            levels across cells).
        alpha (float, default: 0.05): Significance level of the variance threshold, which is the (1-alpha) quantile of a null
            distribution of variance simulated from the beta priors.
        max_gap (integer, default: 2000): Maximum number of base pairs between neighbouring sites of one region.
        stage1only (boolean, default: False): If True, only construct candidate regions.
        min_num_cr (integer, default: 5): Minimum number of sites in a candidate region.
        min_num_vmr (integer, default: 5): Minimum number of sites in a VMR.
        gradient (boolean, default: True): Whether to optimize prevalence by exponentiated gradient descent. If False, the first
            value of control.inits is used as prevalence for decoding every region.
        tp (optional: TransitionModel): Transition probabilities of the HMM. Defaults to the built-in model TP0.
        control (optional: OptimControl): Optimizer settings, see optim_control().
        bb_params (optional: PriorParams): Beta prior parameters. If not given, estimated from coverage with get_prior_params().
        n_sim (integer, default: 500000): Number of simulated null sites for the variance threshold.
        seed (integer, default: 2023): Seed of the null simulation.
        verbose (boolean, default: True): Whether to print progress messages.
        ncpu (integer, default: 1): Number of cpus to use. If > 1 will use a parallel backend with Ray.
        executor (optional): Executor with an order preserving map() method (e.g. concurrent.futures.ThreadPoolExecutor),
            used instead of Ray if given.

    Returns:
        dict or None: None if no candidate region passes the threshold. Otherwise a dictionary with:
            sites: copy of the input with columns cr_index and vmr_index, the 0-based row in cr_ranges / vmr_ranges of
                the region each site belongs to (missing if none).
            vmr_ranges: one row per VMR with columns chr, start, end, num_cpg, start_ind, end_ind, pi (prevalence of the
                methylated grouping), loglik_diff (log-likelihood of the two-grouping minus the one-grouping model, which can
                be used to rank VMRs) and converged. Empty if no VMR is found.
            cr_ranges: one row per candidate region with columns chr, start, end, num_cpg, start_ind, end_ind.
            alpha, var_cutoff: significance level and the variance threshold computed from it.
            bb_params: beta prior parameters used for the threshold and the emission probabilities.
            cr_fits: per candidate region fit diagnostics.
        With stage1only the keys vmr_ranges, vmr_index and cr_fits are omitted.
    """
    assert all([col in sites.columns for col in SITE_COLUMNS]), f"sites must have columns {SITE_COLUMNS}"
    assert 0 < alpha < 1, "alpha must be between 0 and 1"
    assert isinstance(ncpu,int), "ncpu must be positive integer"
    assert ncpu>0, "ncpu must be positive integer"

    sites = sites.reset_index(drop=True).copy()
    if sites[['meth','total']].isnull().values.any():
        raise ValueError("meth and total must not contain missing values.")
    if (sites['meth'] < 0).any() or (sites['meth'] > sites['total']).any():
        raise ValueError("meth must be between 0 and total at every site.")
    if tp is None:
        tp = TP0
    if control is None:
        control = optim_control()

    if verbose:
        backend = backend_name(ncpu, executor)
        if ncpu == 1 and executor is None:
            print(f"Parallel: Using a single core (backend: {backend}).")
        else:
            print(f"Parallel: Parallelizing using {ncpu} workers/cores (backend: {backend}).")

    # Compute cutoff from beta priors
    if bb_params is None:
        bb_params = get_prior_params(sites['total'].to_numpy())
    else:
        bb_params = PriorParams(*bb_params)
    cutoff = compute_var_cutoff(alpha, sites['meth'].to_numpy(), sites['total'].to_numpy(),
                                bb_params.pars_u, bb_params.pars_m, n_sim=n_sim, seed=seed)

    if verbose:
        print("Step 1: Detecting candidate regions...")
    crs = call_candidate_regions(sites, cutoff, max_gap=max_gap, min_num_cr=min_num_cr, ncpu=ncpu, executor=executor)

    if len(crs) == 0:
        if verbose:
            print("...No candidate regions pass the cutoff")
        return None

    if verbose:
        pct_incr = round(sum(cr.num_cpg for cr in crs) / sites.shape[0] * 100, 2)
        print(f"...Finished calling candidate regions - found {len(crs)} candidate regions in total.")
        print(f"...{pct_incr}% sites are called to be in candidate regions.")

    sites['cr_index'] = membership_index(sites.shape[0], crs).array
    cr_ranges = index_to_ranges(sites, crs)

    if stage1only:
        return VMRseqResult(sites=sites, cr_ranges=cr_ranges, alpha=alpha, var_cutoff=cutoff, bb_params=bb_params)

    if verbose:
        print("Step 2: Detecting VMRs...")
    t1 = time.perf_counter()
    vmrs, cr_fits = search_vmr(sites, crs, bb_params, tp=tp, control=control, min_num_vmr=min_num_vmr,
                               gradient=gradient, ncpu=ncpu, executor=executor)
    t2 = time.perf_counter()

    if verbose:
        if len(vmrs) == 0:
            print("No VMR detected.")
        else:
            pct_vmr = round(sum(vmr.num_cpg for vmr in vmrs) / sites.shape[0] * 100, 2)
            print(f"...Finished detecting VMRs - took {round((t2 - t1) / 60, 2)} min and {len(vmrs)} VMRs found in total.")
            print(f"...{pct_vmr}% sites are called to be in VMRs.")

    sites['vmr_index'] = membership_index(sites.shape[0], vmrs).array
    vmr_ranges = index_to_ranges(sites, vmrs)
    vmr_ranges['pi'] = np.array([vmr.pi for vmr in vmrs], dtype='float64')
    vmr_ranges['loglik_diff'] = np.array([vmr.loglik_diff for vmr in vmrs], dtype='float64')
    vmr_ranges['converged'] = np.array([vmr.converged for vmr in vmrs], dtype=bool)

    # Prevalence is re-fitted on each VMR, so a VMR can stop at max_iter inside a converged region
    n_cr_unconverged = int((cr_fits['message'] == "Optimizer reached max_iter.").sum())
    n_vmr_unconverged = int((~vmr_ranges['converged']).sum())
    if n_cr_unconverged > 0 or n_vmr_unconverged > 0:
        warnings.warn(f"Prevalence optimization reached max_iter in {n_cr_unconverged} candidate regions and {n_vmr_unconverged} VMRs; best available estimates are reported.",
                      OptimizerNonConvergence)

    return VMRseqResult(sites=sites, vmr_ranges=vmr_ranges, cr_ranges=cr_ranges, alpha=alpha, var_cutoff=cutoff,
                        bb_params=bb_params, cr_fits=cr_fits)
