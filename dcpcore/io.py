from termcolor import colored

RULE = "-----------------------------------------------------------------"


def print_lowering_summary(lowered):
    print(colored(RULE))
    print("{:^11} | {:^11} | {:^11} | {:^11} | {:^11}".format(
        "Exprs", "Lowered", "Cache Hits", "Unknowns", "Cones"))
    print(colored(RULE))
    print("{:^11} | {:^11} | {:^11} | {:^11} | {:^11}".format(
        len(lowered.forms),
        lowered.computations,
        lowered.hits,
        lowered.unknowns.size,
        len(lowered.constraints),
    ))
    print(colored(RULE))
