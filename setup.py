"""
Setup configuration for IoT Machine Control System
Enables the project to be installed as a Python package
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the contents of README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding='utf-8') if (this_directory / "README.md").exists() else ""

# Core dependencies
core_requirements = [
    'numpy>=1.24.0',
    'pandas>=2.0.0',
    'pyyaml>=6.0.0',
    'python-dotenv>=1.0.0',
    'colorlog>=6.7.0',
    'sqlalchemy>=2.0.0',
    'paho-mqtt>=2.0.0',
]

# Optional dependencies for different components
extras_require = {
    'database': [
        'psycopg2-binary>=2.9.0',
    ],
    'dev': [
        'pytest>=7.4.0',
        'pytest-cov>=4.1.0',
    ],
}

# All extras combined
extras_require['all'] = list(set(sum(extras_require.values(), [])))

# Package metadata
setup(
    name='iot-machine-control-system',
    version='1.0.0',
    author='IoT Analytics Team',
    author_email='iot-analytics@example.com',
    description='Rule-based condition evaluation and command dispatch for factory machines over MQTT',
    long_description=long_description,
    long_description_content_type='text/markdown',
    license='MIT',

    # Package discovery
    packages=find_packages(where='src'),
    package_dir={'': 'src'},

    # Include non-Python files
    include_package_data=True,
    package_data={
        'machine_control.config': ['*.yaml', '*.yml'],
    },

    # Python version requirement
    python_requires='>=3.8',

    # Dependencies
    install_requires=core_requirements,
    extras_require=extras_require,

    # Entry points for CLI commands
    entry_points={
        'console_scripts': [
            'machine-control=machine_control.service:main',
        ],
    },

    # Classifiers for PyPI
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Intended Audience :: Manufacturing',
        'Topic :: System :: Monitoring',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],

    keywords='iot mqtt factory machine-control telemetry',

    # Testing
    test_suite='tests',
    tests_require=[
        'pytest>=7.4.0',
        'pytest-cov>=4.1.0',
    ],

    zip_safe=False,
)
