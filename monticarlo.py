import queue
import threading

import tkinter as tk
from tkinter import ttk, messagebox

from core import (
    DEFAULT_MARKET,
    DEFAULT_PLAN,
    Allocation,
    MarketAssumptions,
    SimulationParameters,
    load_config,
    parse_dollars,
    parse_int,
    parse_percent,
    save_config,
    validate_parameters,
)
from report import (
    format_distribution,
    format_percentile_table,
    format_scenario_comparison,
    format_summary,
)
from scenarios import run_scenario_comparison, scenarios_from_config
from simulation import SimulationCancelled, run_simulation


LABEL_OVERRIDES = {
    "real_estate_return": "Real Estate Return",
    "real_estate_volatility": "Real Estate Volatility",
    "real_estate_percentage": "Real Estate %",
    "equity_percentage": "Equity %",
    "bonds_percentage": "Bonds %",
    "commodities_percentage": "Commodities %",
}

PERCENT_FIELDS = set(DEFAULT_MARKET) | {
    "equity_percentage",
    "bonds_percentage",
    "real_estate_percentage",
    "commodities_percentage",
}

DOLLAR_FIELDS = {"initial_portfolio", "annual_withdrawal"}

CHOICE_FIELDS = {
    "portfolio_source": ["total", "liquid", "custom"],
    "withdrawal_adjustment": ["inflation", "none"],
}

POLL_MS = 100


def plot_results(results, title="Monte Carlo Simulation", show=True):
    """Fan chart of the percentile bands next to the final-value histogram."""
    import matplotlib
    matplotlib.use("TkAgg")
    import matplotlib.pyplot as plt
    from matplotlib.ticker import FuncFormatter

    from report import format_currency_compact

    years = [b.year for b in results.percentiles]
    fig, (fan, hist) = plt.subplots(1, 2, figsize=(12, 4))

    fan.fill_between(
        years,
        [b.p10 for b in results.percentiles],
        [b.p90 for b in results.percentiles],
        color="tab:blue",
        alpha=0.15,
        label="P10-P90",
    )
    fan.fill_between(
        years,
        [b.p25 for b in results.percentiles],
        [b.p75 for b in results.percentiles],
        color="tab:blue",
        alpha=0.3,
        label="P25-P75",
    )
    fan.plot(years, [b.p50 for b in results.percentiles], color="tab:blue", label="Median")
    fan.yaxis.set_major_formatter(FuncFormatter(lambda y, _: format_currency_compact(y)))
    fan.set_xlabel("Year of retirement")
    fan.set_ylabel("Portfolio value")
    fan.set_title(f"{title}: {results.success_rate:.1f}% success")
    fan.legend(loc="upper left")

    labels = [b.range_label for b in results.distribution]
    colors = ["tab:red"] + ["tab:green"] * (len(labels) - 1)
    hist.bar(range(len(labels)), [b.count for b in results.distribution], color=colors)
    hist.set_xticks(range(len(labels)))
    hist.set_xticklabels(labels, rotation=45, ha="right", fontsize=7)
    hist.set_title("Final portfolio value")
    hist.set_ylabel("Trials")

    fig.tight_layout()
    if show:
        plt.show()


def _load_inputs() -> SimulationParameters:
    """Parse GUI inputs and return validated SimulationParameters."""
    market = MarketAssumptions(
        **{key: parse_percent(gen_entries[key].get()) for key in DEFAULT_MARKET}
    )
    allocation = Allocation(
        equity=parse_percent(user_entries["equity_percentage"].get()),
        bonds=parse_percent(user_entries["bonds_percentage"].get()),
        real_estate=parse_percent(user_entries["real_estate_percentage"].get()),
        commodities=parse_percent(user_entries["commodities_percentage"].get()),
    )
    params = SimulationParameters(
        initial_portfolio=parse_dollars(user_entries["initial_portfolio"].get()),
        retirement_years=parse_int(user_entries["retirement_years"].get()),
        allocation=allocation,
        annual_withdrawal=parse_dollars(user_entries["annual_withdrawal"].get()),
        withdrawal_adjustment=user_entries["withdrawal_adjustment"].get(),
        market=market,
        number_of_simulations=parse_int(user_entries["number_of_simulations"].get()),
        portfolio_source=user_entries["portfolio_source"].get(),
    )
    validate_parameters(params)
    return params


def _start(job, on_done):
    """Run ``job(cancel_event, progress)`` off the Tk thread."""
    global cancel_event, worker
    if worker is not None and worker.is_alive():
        messagebox.showinfo("Busy", "A simulation is already running.")
        return
    cancel_event = threading.Event()
    messages = queue.Queue()

    def progress(done, total):
        messages.put(("progress", done, total))

    def target():
        try:
            messages.put(("done", job(cancel_event, progress)))
        except SimulationCancelled:
            messages.put(("cancelled",))
        except Exception as exc:  # reported in the Tk thread
            messages.put(("error", exc))

    worker = threading.Thread(target=target, daemon=True)
    results_var.set("Working...")
    worker.start()
    root.after(POLL_MS, _poll, messages, on_done)


def _poll(messages, on_done):
    try:
        while True:
            msg = messages.get_nowait()
            kind = msg[0]
            if kind == "progress":
                results_var.set(f"Working... {msg[1]:,} of {msg[2]:,} trials")
            elif kind == "done":
                on_done(msg[1])
                return
            elif kind == "cancelled":
                results_var.set("Simulation cancelled.")
                return
            else:
                results_var.set("")
                messagebox.showerror("Simulation error", str(msg[1]))
                return
    except queue.Empty:
        pass
    root.after(POLL_MS, _poll, messages, on_done)


def run_sim():
    """Run a single simulation using the current GUI inputs."""
    try:
        params = _load_inputs()
    except ValueError as exc:
        messagebox.showerror("Input error", str(exc))
        return

    def job(cancel, progress):
        return run_simulation(params, cancel_event=cancel, progress=progress)

    def done(results):
        results_var.set(
            "\n\n".join(
                [
                    format_summary(results),
                    format_percentile_table(results),
                    format_distribution(results, width=15),
                ]
            )
        )
        save_config(params, scenarios)
        plot_results(results)

    _start(job, done)


def run_scenarios():
    """Run the bear/base/bull comparison with the current plan inputs."""
    try:
        params = _load_inputs()
    except ValueError as exc:
        messagebox.showerror("Input error", str(exc))
        return

    def job(cancel, progress):
        return run_scenario_comparison(
            params, scenarios, cancel_event=cancel, progress=progress
        )

    def done(comparison):
        results_var.set(format_scenario_comparison(comparison))
        save_config(params, scenarios)
        items = comparison.items()
        for i, (name, results) in enumerate(items):
            plot_results(results, title=f"{name.title()} scenario", show=i == len(items) - 1)

    _start(job, done)


def cancel_sim():
    if cancel_event is not None:
        cancel_event.set()


def _fill_entry(ent, key, val):
    ent.delete(0, tk.END)
    if key in PERCENT_FIELDS:
        ent.insert(0, f"{float(val):.2f}%")
    elif key in DOLLAR_FIELDS:
        ent.insert(0, f"€{float(val):,.0f}")
    else:
        ent.insert(0, str(val))


def load_defaults():
    for key, default in DEFAULT_MARKET.items():
        _fill_entry(gen_entries[key], key, default)
    for key, default in DEFAULT_PLAN.items():
        if key in CHOICE_FIELDS:
            user_entries[key].set(default)
        else:
            _fill_entry(user_entries[key], key, default)


def _label(key):
    return LABEL_OVERRIDES.get(key, key.replace("_", " ").title())


if __name__ == "__main__":
    root = tk.Tk()
    root.title("FIRE Monte Carlo Simulator")
    root.geometry("520x900")

    gen_entries = {}
    user_entries = {}
    worker = None
    cancel_event = None

    config = load_config()
    gen_cfg = config.get("general", {})
    user_cfg = config.get("user", {})
    scenarios = scenarios_from_config(config)

    label_width = max(len(_label(k)) for k in list(DEFAULT_MARKET) + list(DEFAULT_PLAN))

    general_frame = ttk.LabelFrame(root, text="Market Assumptions")
    general_frame.pack(fill="x", padx=10, pady=5)
    for key, default in DEFAULT_MARKET.items():
        row = ttk.Frame(general_frame)
        row.pack(fill="x", pady=2)
        ttk.Label(row, text=_label(key), width=label_width, anchor="w").pack(side="left")
        ent = ttk.Entry(row)
        _fill_entry(ent, key, gen_cfg.get(key, default))
        ent.pack(side="left", fill="x", expand=True)
        gen_entries[key] = ent

    user_frame = ttk.LabelFrame(root, text="Retirement Plan")
    user_frame.pack(fill="x", padx=10, pady=5)
    for key, default in DEFAULT_PLAN.items():
        row = ttk.Frame(user_frame)
        row.pack(fill="x", pady=2)
        ttk.Label(row, text=_label(key), width=label_width, anchor="w").pack(side="left")
        val = user_cfg.get(key, default)
        if key in CHOICE_FIELDS:
            var = tk.StringVar(value=val)
            ttk.Combobox(
                row, textvariable=var, values=CHOICE_FIELDS[key], state="readonly"
            ).pack(side="left", fill="x", expand=True)
            user_entries[key] = var
        else:
            ent = ttk.Entry(row)
            _fill_entry(ent, key, val)
            ent.pack(side="left", fill="x", expand=True)
            user_entries[key] = ent

    run_frame = ttk.Frame(root)
    run_frame.pack(fill="x", padx=10, pady=5)
    ttk.Button(run_frame, text="Run Simulation", command=run_sim).pack()
    ttk.Button(run_frame, text="Compare Bear/Base/Bull", command=run_scenarios).pack()
    ttk.Button(run_frame, text="Cancel", command=cancel_sim).pack()
    ttk.Button(run_frame, text="Load Defaults", command=load_defaults).pack()

    results_frame = ttk.LabelFrame(root, text="Results")
    results_frame.pack(fill="both", expand=True, padx=10, pady=5)
    results_var = tk.StringVar()
    ttk.Label(
        results_frame, textvariable=results_var, font=("Courier", 9), justify="left"
    ).pack(anchor="w")

    root.mainloop()
