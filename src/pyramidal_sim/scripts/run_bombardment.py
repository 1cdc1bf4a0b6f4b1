##
## Runs a synaptic bombardment simulation of the configured pyramidal cell
## and reports somatic voltage statistics.
##

import click
from pyramidal_sim import utils
from pyramidal_sim.clamps.cell import measure_input_resistance, measure_vm_statistics
from pyramidal_sim.env import Env
from pyramidal_sim.runtime import Simulator

script_name = "run_bombardment.py"
logger = utils.get_script_logger(script_name)


@click.command()
@click.option(
    "--config",
    "config_file",
    required=False,
    type=click.Path(exists=True, file_okay=True, dir_okay=False),
    help="model configuration file; the packaged default model is used if omitted",
)
@click.option("--tstop", type=float, help="physical time to simulate (ms)")
@click.option("--dt", type=float, help="simulation time step (ms)")
@click.option(
    "--v-init", type=float, help="initialization membrane potential (mV)"
)
@click.option("--seed", type=int, help="presynaptic generator seed")
@click.option(
    "--t-start",
    type=float,
    default=200.0,
    help="samples before this time are excluded from statistics (ms)",
)
@click.option("--bins", type=int, default=50, help="number of Vm histogram bins")
@click.option(
    "--set",
    "param_overrides",
    type=(str, float),
    multiple=True,
    help="runtime parameter override, e.g. --set 'Synapse Mechanisms.AMPA.gmax' 0.002",
)
@click.option(
    "--measure-rin",
    is_flag=True,
    help="also estimate input resistance from paired current injection runs",
)
@click.option(
    "--stim-amp",
    type=float,
    default=-0.1,
    help="current injected for the input resistance estimate (nA)",
)
@click.option("--verbose", "-v", is_flag=True)
def main(
    config_file,
    tstop,
    dt,
    v_init,
    seed,
    t_start,
    bins,
    param_overrides,
    measure_rin,
    stim_amp,
    verbose,
):
    utils.config_logging(verbose)

    env = Env(
        config=config_file,
        dt=dt,
        tstop=tstop,
        v_init=v_init,
        seed=seed,
        verbose=verbose,
    )

    simulator = Simulator(env)
    for path, value in param_overrides:
        simulator.set_parameter(path, value)

    stats = measure_vm_statistics(
        env, seed=env.random_seed, t_start=t_start, bins=bins, simulator=simulator
    )
    click.echo(
        f"{stats['probe']}: Vm mean = {stats['mean']:.3f} mV, "
        f"SD = {stats['sd']:.3f} mV, range = [{stats['min']:.3f}, {stats['max']:.3f}] mV"
    )
    for count, lo, hi in zip(
        stats["hist_counts"], stats["hist_edges"][:-1], stats["hist_edges"][1:]
    ):
        logger.info(f"[{lo:8.3f}, {hi:8.3f}) mV: {count}")

    if measure_rin:
        rin_results = measure_input_resistance(
            env, stim_amp=stim_amp, seed=env.random_seed, t_start=t_start
        )
        click.echo(f"Rin = {rin_results['Rin']:.3f} MOhm")


if __name__ == "__main__":
    main()
