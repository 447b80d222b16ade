"""GPIO gateway core: state, commands, groups, rules and conversions."""
