from setuptools import setup, find_packages

# Load app and test requirements
requirements = []
with open('requirements.txt', 'r') as rh:
    for requirement in rh.read().splitlines():
        requirement = requirement.strip()
        if not requirement or requirement.startswith('#'):
            continue
        requirements.append(requirement)

test_requirements = [
    'pytest',
    'pytest-cov',
    'pytest-xdist',
    ]

setup(
    name='operator_volume_autoscaler',
    packages=list(find_packages(exclude=['tests'])),
    version=1.0,
    description='Operator for growing Kubernetes PVCs before they fill up',
    install_requires=requirements,
    extras_require={'test': test_requirements},
    python_requires='>=3.8',
)
