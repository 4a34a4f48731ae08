"""The cgroups v2 unified hierarchy: resources, device filters, paths, statistics and group management."""