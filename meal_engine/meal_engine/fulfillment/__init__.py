"""Order materialisation, vendor capacity and vendor holidays."""
