import argparse
import os

from omegaconf import OmegaConf

from lattice_planner.benchmark.helper_functions import initialize_logger, load_config_file, release_logger
from lattice_planner.benchmark.simulation import build_scenario, simulate

if __name__ == '__main__':
    repo_dir = os.getcwd()
    parser = argparse.ArgumentParser(description='Demo')
    parser.add_argument('--cfg_file', type=str, default=os.path.join(repo_dir, 'cfgs/demo_config.yaml'), help='specify the config file for the demo')
    args = parser.parse_args()

    cfg = load_config_file(args.cfg_file)
    logger = initialize_logger('lattice_planner', cfg)

    lane_path, static_obstacles, dynamic_obstacles, initial_state = build_scenario(cfg)
    vehicle_params = OmegaConf.create(cfg['VEHICLE']) if cfg.get('VEHICLE') else None

    result = simulate(lane_path, static_obstacles, dynamic_obstacles, initial_state,
                      vehicle_params=vehicle_params,
                      planner_config=cfg.get('PLANNER_SETTINGS'),
                      controller=cfg.get('CONTROLLER', 'stanley'),
                      dt=cfg.get('DT', 0.1),
                      sim_time=cfg.get('SIM_TIME', 20.0),
                      replan_interval=cfg.get('REPLAN_INTERVAL', 0.5),
                      use_process=cfg.get('USE_PROCESS', True),
                      show_animation=cfg.get('SHOW_ANIMATION', False))

    print(result)
    print(f"    average planning time: {result.stats.planning_time:.3f} s over {result.num_plans} plans")
    release_logger(logger)
