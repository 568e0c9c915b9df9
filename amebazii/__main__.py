# SPDX-FileCopyrightText: 2024-2025 amebazii contributors as noted.
#
# SPDX-License-Identifier: GPL-2.0-or-later

import amebazii

if __name__ == "__main__":
    amebazii._main()
