#! /usr/bin/env python
"""The module creates some basic constants to describe the package."""

title_name = u"ltiprovider"
name = "ltiprovider"
copyright = u"\xA92026, the ltiprovider authors"

major_version = "0.1"
build_date = "20261018"
version = "%s.%s" % (major_version, build_date)

title = (
    "ltiprovider: "
    "an IMS LTI 1.x tool provider with extension service support")
